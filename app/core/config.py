from __future__ import annotations

import os
from decimal import Decimal


def _env_flag(name: str, default: str = "0") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in {"1", "true", "yes", "on"}


def _env_optional_int(name: str) -> int | None:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else None


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key")
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///memorial_booking.db",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JSON_SORT_KEYS = False

    LOG_FILE = os.getenv("LOG_FILE", "logs/memorial_booking.log")

    # Proof-of-payment artifacts; relative paths resolve under the instance folder.
    PROOF_STORAGE_DIR = os.getenv("PROOF_STORAGE_DIR", "storage/proofs")
    MAX_PROOF_BYTES = int(os.getenv("MAX_PROOF_BYTES", str(5 * 1024 * 1024)))
    ALLOWED_PROOF_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "pdf"})

    # Minimum upfront payment for client reservations, as a share of the resource price.
    RESERVATION_FEE_RATIO = Decimal(os.getenv("RESERVATION_FEE_RATIO", "0.10"))

    # Pending reservations are only expired when this is set.
    PENDING_RESERVATION_TTL_HOURS = _env_optional_int("PENDING_RESERVATION_TTL_HOURS")

    NOTIFIER_BACKEND = os.getenv("NOTIFIER_BACKEND", "smtp")
    NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))
    MAIL_FROM = os.getenv("MAIL_FROM", "reservations@memorial-gardens.local")
    SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME", "")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
    SMTP_USE_TLS = _env_flag("SMTP_USE_TLS", "1")


class DevelopmentConfig(Config):
    DEBUG = True
    APP_ENV = "development"
    NOTIFIER_BACKEND = os.getenv("NOTIFIER_BACKEND", "outbox")


class ProductionConfig(Config):
    DEBUG = False
    APP_ENV = "production"


config = {
    "development": DevelopmentConfig,
    "dev": DevelopmentConfig,
    "production": ProductionConfig,
    "prod": ProductionConfig,
    "default": Config,
}


def config_from_env() -> type[Config]:
    app_env = (os.getenv("APP_ENV") or "").strip().lower() or "default"
    if app_env not in config:
        raise ValueError(f"Unknown APP_ENV '{app_env}', expected one of {sorted(config)}")
    return config[app_env]
