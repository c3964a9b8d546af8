from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from werkzeug.datastructures import FileStorage

from app.booking.artifacts import ProofUpload, discard_artifact, read_proof_upload, store_proof
from app.booking.errors import (
    BookingError,
    BookingOutcome,
    DeliveryFailure,
    NotFound,
    PersistenceFailure,
    ValidationError,
)
from app.booking.ledger import delete_entry, find_reservation, get_reservation, log_event
from app.booking.notifications import send_confirmation
from app.booking.policy import Actor
from app.booking.services import release_claim
from app.core.extensions import db
from app.core.models import ActorRole, ReservationEventType, ReservationStatus, utcnow

logger = logging.getLogger(__name__)


def _compensate(reservation_id: int, artifact_ref: str | None, error: BookingError) -> BookingOutcome:
    """Undo a booking whose confirmation could not be delivered.

    Releases the claim (subject to the release guard), deletes the reservation
    and its artifact. The returned outcome carries the original error.
    A reservation that left `pending` meanwhile is not touched; that case is a
    PersistenceFailure that is not compensated.
    """
    db.session.rollback()
    try:
        reservation = find_reservation(reservation_id)
        if reservation is not None and reservation.status != ReservationStatus.PENDING:
            logger.error(
                "Reservation %s is %s after %s; left in place for manual follow-up",
                reservation.reference,
                reservation.status.value,
                error.kind,
            )
            return BookingOutcome.failure(
                PersistenceFailure(
                    f"Reservation {reservation.reference} was {reservation.status.value} before its "
                    "confirmation failed and was not rolled back"
                ),
                compensated=False,
                reservation=reservation,
            )
        if reservation is not None:
            stored_proof = reservation.proof_path
            if reservation.is_active:
                release_claim(reservation, None, "compensation")
            log_event(ReservationEventType.COMPENSATED, f"{error.kind}: {error}", None, reservation)
            delete_entry(reservation)
            if stored_proof and stored_proof != artifact_ref:
                discard_artifact(stored_proof)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Compensation failed for reservation %s; manual repair required", reservation_id, exc_info=True)
        return BookingOutcome.failure(
            PersistenceFailure("The booking could not be finalized and staff have been alerted"),
            compensated=False,
        )

    discard_artifact(artifact_ref)
    logger.warning("Reservation %s compensated after %s", reservation_id, error.kind)
    return BookingOutcome.failure(error, compensated=True)


def attach_proof_and_finalize(reservation_id: int, artifact_ref: str) -> BookingOutcome:
    reservation = find_reservation(reservation_id)
    if reservation is None:
        discard_artifact(artifact_ref)
        return BookingOutcome.failure(NotFound(f"Reservation {reservation_id} not found"))
    if (
        reservation.actor_role != ActorRole.CLIENT
        or reservation.status != ReservationStatus.PENDING
        or reservation.confirmation_sent_at is not None
    ):
        discard_artifact(artifact_ref)
        return BookingOutcome.failure(
            ValidationError(f"Reservation {reservation.reference} is not awaiting proof of payment")
        )

    try:
        reservation.proof_path = artifact_ref
        reservation.proof_uploaded_at = utcnow()
        log_event(ReservationEventType.PROOF_ATTACHED, "Proof of payment attached", None, reservation)
        db.session.commit()
    except SQLAlchemyError:
        logger.error("Could not attach proof to reservation %s", reservation_id, exc_info=True)
        return _compensate(
            reservation_id,
            artifact_ref,
            PersistenceFailure("Proof of payment could not be saved; please book again"),
        )

    try:
        send_confirmation(reservation)
    except DeliveryFailure as exc:
        logger.warning("Confirmation for %s not delivered: %s", reservation.reference, exc)
        return _compensate(reservation_id, artifact_ref, exc)

    try:
        reservation.confirmation_sent_at = utcnow()
        log_event(ReservationEventType.CONFIRMATION_SENT, "Confirmation delivered", None, reservation)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Confirmation for reservation %s sent but not recorded", reservation_id, exc_info=True)
        return BookingOutcome.failure(
            PersistenceFailure("Confirmation was sent but could not be recorded"),
            reservation=reservation,
        )

    logger.info("Reservation %s confirmed and awaiting review", reservation.reference)
    return BookingOutcome.success(reservation)


def upload_proof(reservation_id: int, file_obj: FileStorage | ProofUpload | None, actor: Actor) -> BookingOutcome:
    try:
        reservation = get_reservation(reservation_id)
        if not actor.policy.may_review and reservation.client_id != actor.user_id:
            raise NotFound(f"Reservation {reservation_id} not found")
        upload = read_proof_upload(file_obj)
    except BookingError as exc:
        return BookingOutcome.failure(exc)

    try:
        artifact_ref = store_proof(upload)
    except DeliveryFailure as exc:
        awaiting_proof = (
            reservation.actor_role == ActorRole.CLIENT
            and reservation.status == ReservationStatus.PENDING
            and reservation.confirmation_sent_at is None
        )
        if not awaiting_proof:
            return BookingOutcome.failure(exc)
        return _compensate(reservation_id, None, exc)
    return attach_proof_and_finalize(reservation_id, artifact_ref)
