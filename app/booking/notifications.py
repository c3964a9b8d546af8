from __future__ import annotations

import logging
import smtplib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage

from flask import Flask, current_app

from app.booking.errors import DeliveryFailure
from app.core.models import Reservation, ReservationStatus
from app.core.utils import money

logger = logging.getLogger(__name__)

EXTENSION_KEY = "booking_notifier"

TEMPLATES: dict[str, tuple[str, str]] = {
    "reservation_confirmation": (
        "Reservation {reference} received",
        "Dear {client_name},\n\n"
        "We received your reservation {reference} for {resource} together with your proof of payment "
        "({payment_amount} via {payment_method}).\n"
        "Our staff will review it and contact you at {client_contact}.\n\n"
        "Deceased: {deceased_name}\n"
        "Total price: {total_price}\n",
    ),
    "reservation_status": (
        "Reservation {reference} {status}",
        "Dear {client_name},\n\n"
        "Your reservation {reference} for {resource} is now {status}.\n"
        "{reason_line}",
    ),
}


@dataclass
class OutboundMessage:
    recipient: str
    template: str
    subject: str
    body: str


def is_valid_recipient(value: str | None) -> bool:
    candidate = (value or "").strip()
    if not candidate or " " in candidate or candidate.count("@") != 1:
        return False
    local, domain = candidate.split("@")
    return bool(local) and "." in domain


def resolve_recipient(reservation: Reservation) -> str | None:
    for candidate in (reservation.client_email, reservation.client_contact):
        if is_valid_recipient(candidate):
            return candidate.strip()
    return None


def render_message(template: str, data: dict[str, object]) -> tuple[str, str]:
    try:
        subject, body = TEMPLATES[template]
    except KeyError as exc:
        raise DeliveryFailure(f"Unknown notification template '{template}'") from exc
    try:
        return subject.format(**data), body.format(**data)
    except KeyError as exc:
        raise DeliveryFailure(f"Missing template field {exc} for '{template}'") from exc


def reservation_message_data(reservation: Reservation) -> dict[str, object]:
    reason = (reservation.rejection_reason or "").strip()
    return {
        "reference": reservation.reference,
        "resource": reservation.resource_ref,
        "client_name": reservation.client_name,
        "client_contact": reservation.client_contact,
        "deceased_name": reservation.deceased_name or "-",
        "payment_amount": money(reservation.payment_amount),
        "payment_method": reservation.payment_method.value.replace("_", " "),
        "total_price": money(reservation.total_price),
        "status": reservation.status.value,
        "reason_line": f"Reason: {reason}\n" if reason else "",
    }


class BaseNotifier(ABC):
    @abstractmethod
    def send(self, recipient: str, template: str, data: dict[str, object]) -> None:
        """Deliver a message or raise ``DeliveryFailure``."""


class OutboxNotifier(BaseNotifier):
    """Keeps messages in memory. Used in development and tests."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: list[OutboundMessage] = []

    def send(self, recipient: str, template: str, data: dict[str, object]) -> None:
        if not is_valid_recipient(recipient):
            raise DeliveryFailure(f"Invalid recipient '{recipient}'")
        if self.fail:
            raise DeliveryFailure(f"Notification to {recipient} failed")
        subject, body = render_message(template, data)
        self.messages.append(OutboundMessage(recipient=recipient, template=template, subject=subject, body=body))


class SmtpNotifier(BaseNotifier):
    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_config(cls, config) -> SmtpNotifier:
        return cls(
            host=config["SMTP_HOST"],
            port=int(config["SMTP_PORT"]),
            sender=config["MAIL_FROM"],
            username=config.get("SMTP_USERNAME", ""),
            password=config.get("SMTP_PASSWORD", ""),
            use_tls=bool(config.get("SMTP_USE_TLS", True)),
            timeout=float(config.get("NOTIFICATION_TIMEOUT_SECONDS", 10)),
        )

    def send(self, recipient: str, template: str, data: dict[str, object]) -> None:
        if not is_valid_recipient(recipient):
            raise DeliveryFailure(f"Invalid recipient '{recipient}'")
        subject, body = render_message(template, data)
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = recipient
        message["Subject"] = subject
        message.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryFailure(f"Could not deliver '{template}' to {recipient}") from exc


def init_notifier(app: Flask) -> None:
    backend = (app.config.get("NOTIFIER_BACKEND") or "outbox").strip().lower()
    if backend == "smtp":
        app.extensions[EXTENSION_KEY] = SmtpNotifier.from_config(app.config)
    elif backend == "outbox":
        app.extensions[EXTENSION_KEY] = OutboxNotifier()
    else:
        raise ValueError(f"Unknown NOTIFIER_BACKEND '{backend}'")


def get_notifier() -> BaseNotifier:
    return current_app.extensions[EXTENSION_KEY]


def send_confirmation(reservation: Reservation) -> None:
    recipient = resolve_recipient(reservation)
    if recipient is None:
        raise DeliveryFailure(f"Reservation {reservation.reference} has no valid email address")
    get_notifier().send(recipient, "reservation_confirmation", reservation_message_data(reservation))


def notify_status_change(reservation: Reservation) -> bool:
    if reservation.status not in {
        ReservationStatus.APPROVED,
        ReservationStatus.REJECTED,
        ReservationStatus.CANCELLED,
    }:
        return False
    recipient = resolve_recipient(reservation)
    if recipient is None:
        return False
    try:
        get_notifier().send(recipient, "reservation_status", reservation_message_data(reservation))
    except DeliveryFailure:
        logger.warning("Status notification for %s was not delivered", reservation.reference, exc_info=True)
        return False
    return True
