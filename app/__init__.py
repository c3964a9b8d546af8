from __future__ import annotations

import logging
import os
from pathlib import Path

import click
from flask import Flask, jsonify

from app.booking import booking_bp
from app.booking.artifacts import init_artifact_store
from app.booking.errors import BookingError
from app.booking.notifications import init_notifier
from app.booking.routes import error_response
from app.core.auth import auth_bp
from app.core.config import Config, config_from_env
from app.core.extensions import db, login_manager, migrate
from app.core.models import User, seed_demo_data


def create_app(config_object: type[Config] | None = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_object or config_from_env())
    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    login_manager.unauthorized_handler(_unauthorized)

    init_artifact_store(app)
    init_notifier(app)

    app.register_blueprint(auth_bp)
    app.register_blueprint(booking_bp)

    register_cli(app)
    register_routes(app)
    return app


def configure_logging(app: Flask) -> None:
    if not app.debug and not app.testing:
        log_path = Path(app.config.get("LOG_FILE") or "logs/memorial_booking.log")
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s [in %(pathname)s:%(lineno)d]")
        )
        file_handler.setLevel(logging.INFO)
        app.logger.addHandler(file_handler)
        logging.getLogger("app").addHandler(file_handler)
        logging.getLogger("app").setLevel(logging.INFO)
        app.logger.setLevel(logging.INFO)
        app.logger.info("Memorial booking startup")
    else:
        logging.getLogger("app").setLevel(logging.DEBUG)
        app.logger.setLevel(logging.DEBUG)


def register_routes(app: Flask) -> None:
    @app.get("/")
    def home():
        return jsonify({"service": "memorial-booking", "status": "ok"})

    @app.errorhandler(BookingError)
    def booking_error(error: BookingError):
        return error_response(error)

    @app.errorhandler(401)
    def unauthorized(_error):
        return jsonify({"ok": False, "error": "unauthorized"}), 401

    @app.errorhandler(403)
    def forbidden(_error):
        return jsonify({"ok": False, "error": "forbidden"}), 403

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"ok": False, "error": "not_found"}), 404


def register_cli(app: Flask) -> None:
    @app.cli.command("seed-demo")
    @click.option("--reset", is_flag=True, help="Delete existing data before seed.")
    def seed_demo(reset: bool) -> None:
        """Seed demo users, gardens, legacy lots and columbarium slots."""
        if reset:
            if not _is_dev_mode(app):
                click.echo("Reset blocked outside a development environment.")
                return
            db.drop_all()
            db.create_all()
        if not User.query.first():
            seed_demo_data(db.session)
            click.echo("Demo data seeded.")
        else:
            click.echo("Seed skipped: existing users found.")

    @app.cli.command("reservations-expire-pending")
    def reservations_expire_pending() -> None:
        """Cancel pending reservations older than PENDING_RESERVATION_TTL_HOURS."""
        from app.booking.services import expire_pending_reservations

        result = expire_pending_reservations()
        if not result.enabled:
            click.echo("Expiry disabled: set PENDING_RESERVATION_TTL_HOURS to enable it.")
            return
        click.echo(f"expired={len(result.expired)} failed={len(result.failed)}")

    @app.cli.command("claims-audit")
    def claims_audit() -> None:
        """Report mismatches between resource status and active reservations."""
        from app.booking.query import audit_claims

        issues = audit_claims()
        if not issues:
            click.echo("Claims audit passed: catalog and ledger agree.")
            return
        for issue in issues:
            click.echo(f"- {issue.code} {issue.ref} {issue.message}")
        raise SystemExit(1)


def _unauthorized():
    return jsonify({"ok": False, "error": "unauthorized"}), 401


def _is_dev_mode(app: Flask) -> bool:
    if app.config.get("TESTING"):
        return False
    if app.debug:
        return True
    app_env = (app.config.get("APP_ENV") or os.getenv("APP_ENV") or "").strip().lower()
    return app_env in {"dev", "development"}


@login_manager.user_loader
def load_user(user_id: str) -> User | None:
    return db.session.get(User, int(user_id))
