from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.datastructures import FileStorage

from app.booking.artifacts import ProofUpload, discard_artifact, read_proof_upload, store_proof
from app.booking.catalog import (
    Resource,
    ResourceRef,
    compare_and_set_coordinate,
    compare_and_set_status,
    coordinate_refs,
    find_resource,
    parse_resource_ref,
)
from app.booking.errors import (
    BookingError,
    BookingOutcome,
    Conflict,
    NotFound,
    PersistenceFailure,
    ValidationError,
)
from app.booking.ledger import (
    create_entry,
    delete_entry,
    get_reservation,
    list_by_resource,
    log_event,
    parse_reservation_status,
    transition_status,
)
from app.booking.notifications import is_valid_recipient, notify_status_change
from app.booking.policy import Actor, ActorPolicy
from app.core.extensions import db
from app.core.models import (
    ActorRole,
    PaymentMethod,
    Reservation,
    ReservationEventType,
    ReservationSource,
    ReservationStatus,
    ResourceStatus,
    utcnow,
)
from app.core.utils import CENT, money

logger = logging.getLogger(__name__)

RELEASING_STATUSES = {ReservationStatus.REJECTED, ReservationStatus.CANCELLED}
NOTIFIED_STATUSES = {ReservationStatus.APPROVED, ReservationStatus.REJECTED, ReservationStatus.CANCELLED}
MANUAL_RESOURCE_STATUSES = {
    ResourceStatus.AVAILABLE,
    ResourceStatus.OCCUPIED,
    ResourceStatus.MAINTENANCE,
    ResourceStatus.UNAVAILABLE,
}


@dataclass
class ReservationRequest:
    client_name: str
    client_contact: str
    client_email: str
    payment_method: PaymentMethod
    payment_amount: Decimal
    deceased_name: str = ""
    deceased_birth_date: date | None = None
    deceased_death_date: date | None = None
    deceased_relationship: str = ""
    special_requirements: str = ""
    staff_notes: str = ""
    source: ReservationSource = ReservationSource.WEB
    client_id: int | None = None


@dataclass
class ExpiryResult:
    enabled: bool = True
    expired: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


def _text(payload: dict, key: str, max_length: int | None = None) -> str:
    value = payload.get(key)
    cleaned = "" if value is None else str(value).strip()
    if max_length is not None and len(cleaned) > max_length:
        raise ValidationError(f"{key} exceeds {max_length} characters")
    return cleaned


def _parse_decimal(value, field_name: str) -> Decimal:
    raw = ("" if value is None else str(value)).strip().replace(",", "")
    if not raw:
        raise ValidationError(f"Missing {field_name}")
    try:
        amount = Decimal(raw).quantize(CENT)
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount for {field_name}") from exc
    if amount < 0:
        raise ValidationError(f"{field_name} cannot be negative")
    return amount


def _parse_optional_iso_date(value, field_name: str) -> date | None:
    raw = ("" if value is None else str(value)).strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise ValidationError(f"Invalid date format for {field_name}") from exc


def _parse_payment_method(value) -> PaymentMethod:
    raw = ("" if value is None else str(value)).strip().lower()
    if not raw:
        raise ValidationError("Missing payment_method")
    try:
        return PaymentMethod(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid payment method '{raw}'") from exc


def _parse_source(value, actor: Actor, defer_proof: bool) -> ReservationSource:
    raw = ("" if value is None else str(value)).strip().lower()
    if raw:
        try:
            return ReservationSource(raw)
        except ValueError as exc:
            raise ValidationError(f"Invalid reservation source '{raw}'") from exc
    if defer_proof:
        return ReservationSource.CHATBOT
    if actor.role == ActorRole.CLIENT:
        return ReservationSource.WEB
    return ReservationSource.COUNTER


def parse_reservation_payload(payload: dict, actor: Actor, defer_proof: bool = False) -> ReservationRequest:
    is_client = actor.role == ActorRole.CLIENT
    client_name = _text(payload, "client_name", 120) or (actor.name if is_client else "")
    if not client_name:
        raise ValidationError("Missing client_name")
    client_contact = _text(payload, "client_contact", 120)
    if not client_contact:
        raise ValidationError("Missing client_contact")
    client_email = _text(payload, "client_email", 255) or (actor.email if is_client else "")
    if client_email and not is_valid_recipient(client_email):
        raise ValidationError(f"Invalid client_email '{client_email}'")

    birth = _parse_optional_iso_date(payload.get("deceased_birth_date"), "deceased_birth_date")
    death = _parse_optional_iso_date(payload.get("deceased_death_date"), "deceased_death_date")
    if birth and death and death < birth:
        raise ValidationError("Date of death cannot be before date of birth")

    client_id = actor.user_id if is_client else None
    if not is_client and payload.get("client_id") not in (None, ""):
        try:
            client_id = int(payload["client_id"])
        except (TypeError, ValueError) as exc:
            raise ValidationError("Invalid client_id") from exc

    return ReservationRequest(
        client_name=client_name,
        client_contact=client_contact,
        client_email=client_email,
        payment_method=_parse_payment_method(payload.get("payment_method")),
        payment_amount=_parse_decimal(payload.get("payment_amount"), "payment_amount"),
        deceased_name=_text(payload, "deceased_name", 120),
        deceased_birth_date=birth,
        deceased_death_date=death,
        deceased_relationship=_text(payload, "deceased_relationship", 60),
        special_requirements=_text(payload, "special_requirements", 500),
        staff_notes="" if is_client else _text(payload, "staff_notes", 1000),
        source=_parse_source(payload.get("source"), actor, defer_proof),
        client_id=client_id,
    )


def _check_fee_floor(policy: ActorPolicy, request: ReservationRequest, resource: Resource) -> None:
    if not policy.enforce_fee_floor:
        return
    ratio = Decimal(str(current_app.config.get("RESERVATION_FEE_RATIO", "0")))
    minimum = (resource.price * ratio).quantize(CENT)
    if request.payment_amount < minimum:
        raise ValidationError(
            f"Minimum reservation fee is {money(minimum)} ({ratio:.0%} of {money(resource.price)})"
        )


def _build_reservation(
    ref: ResourceRef,
    actor: Actor,
    request: ReservationRequest,
    resource: Resource,
) -> Reservation:
    reservation = Reservation(
        catalog_kind=ref.kind,
        resource_code=ref.code,
        actor_role=actor.role,
        source=request.source,
        status=ReservationStatus.PENDING,
        client_id=request.client_id,
        staff_id=None if actor.role == ActorRole.CLIENT else actor.user_id,
        client_name=request.client_name,
        client_contact=request.client_contact,
        client_email=request.client_email,
        deceased_name=request.deceased_name,
        deceased_birth_date=request.deceased_birth_date,
        deceased_death_date=request.deceased_death_date,
        deceased_relationship=request.deceased_relationship,
        payment_method=request.payment_method,
        payment_amount=request.payment_amount,
        total_price=resource.price,
        special_requirements=request.special_requirements,
        staff_notes=request.staff_notes,
    )
    if actor.policy.auto_approve:
        reservation.status = ReservationStatus.APPROVED
        reservation.approved_by_id = actor.user_id
        reservation.approved_at = utcnow()
    return reservation


def create_reservation(
    resource_ref: str | ResourceRef,
    actor: Actor,
    payload: dict,
    proof: FileStorage | ProofUpload | None = None,
    defer_proof: bool = False,
) -> BookingOutcome:
    policy = actor.policy
    try:
        ref = parse_resource_ref(resource_ref)
        request = parse_reservation_payload(payload, actor, defer_proof=defer_proof)
        upload = read_proof_upload(proof) if proof is not None else None
        if policy.requires_proof and upload is None and not defer_proof:
            raise ValidationError("Proof of payment is required for client reservations")
        resource = find_resource(ref)
        _check_fee_floor(policy, request, resource)
    except BookingError as exc:
        return BookingOutcome.failure(exc)

    artifact_ref = None
    if upload is not None:
        try:
            artifact_ref = store_proof(upload)
        except BookingError as exc:
            return BookingOutcome.failure(exc)

    gated = artifact_ref is not None and policy.requires_proof
    try:
        claimed = compare_and_set_coordinate(ref, ResourceStatus.AVAILABLE, ResourceStatus.RESERVED)
        if not claimed or list_by_resource(ref):
            db.session.rollback()
            discard_artifact(artifact_ref)
            logger.info("Reservation conflict on %s for %s", ref, actor.role.value)
            return BookingOutcome.failure(Conflict(f"Resource {ref} is no longer available"))

        reservation = _build_reservation(ref, actor, request, resource)
        if artifact_ref is not None and not gated:
            reservation.proof_path = artifact_ref
            reservation.proof_uploaded_at = utcnow()
        create_entry(reservation)
        log_event(ReservationEventType.CREATED, f"{ref} claimed ({reservation.status.value})", actor, reservation)
        if reservation.status == ReservationStatus.APPROVED:
            log_event(ReservationEventType.AUTO_APPROVED, f"Auto-approved for {actor.role.value}", actor, reservation)
        db.session.commit()
    except SQLAlchemyError:
        # The claim and the ledger row share one transaction; rolling back releases the resource.
        db.session.rollback()
        discard_artifact(artifact_ref)
        logger.error("Ledger write failed for %s; claim rolled back", ref, exc_info=True)
        return BookingOutcome.failure(
            PersistenceFailure(f"Reservation for {ref} could not be saved; the resource was released"),
            compensated=True,
        )

    logger.info("Reservation %s created on %s (%s)", reservation.reference, ref, reservation.status.value)
    if gated:
        from app.booking.completion import attach_proof_and_finalize

        return attach_proof_and_finalize(reservation.id, artifact_ref)
    return BookingOutcome.success(reservation)


def release_claim(reservation: Reservation, actor: Actor | None, cause: str) -> bool:
    """Free the reservation's resource unless another active reservation still holds it.

    Graves are freed on every catalog row at their coordinate, and a claim on
    any of those rows keeps them all reserved. Runs inside the caller's
    transaction; the caller commits.
    """
    ref = ResourceRef(reservation.catalog_kind, reservation.resource_code)
    others = list_by_resource(ref, exclude_id=reservation.id)
    if others:
        holder = others[0]
        logger.warning("Keeping %s reserved: %s still claims it", ref, holder.reference)
        log_event(
            ReservationEventType.RELEASE_SKIPPED,
            f"{holder.reference} ({holder.status.value}) still claims {ref}",
            actor,
            reservation,
        )
        return False
    released = False
    for target in coordinate_refs(ref):
        changed = compare_and_set_status(target, ResourceStatus.RESERVED, ResourceStatus.AVAILABLE)
        if target == ref:
            released = changed
    if not released:
        logger.warning("Resource %s was not reserved when releasing %s", ref, reservation.reference)
        log_event(ReservationEventType.RELEASE_SKIPPED, f"{ref} was not reserved", actor, reservation)
        return False
    log_event(ReservationEventType.RESOURCE_RELEASED, f"{ref} released ({cause})", actor, reservation)
    return True


def _authorize_transition(reservation: Reservation, new_status: ReservationStatus, actor: Actor) -> None:
    policy = actor.policy
    if not policy.may_review:
        if reservation.client_id is None or reservation.client_id != actor.user_id:
            raise NotFound(f"Reservation {reservation.id} not found")
        if new_status != ReservationStatus.CANCELLED:
            raise ValidationError("Clients can only cancel their reservations")
        if reservation.status != ReservationStatus.PENDING:
            raise ValidationError("Only pending reservations can be cancelled by the client")
    if new_status == ReservationStatus.COMPLETED:
        if reservation.actor_role != ActorRole.CLIENT:
            raise ValidationError("Only client reservations go through completion")
        if reservation.confirmation_sent_at is None:
            raise ValidationError("Proof of payment has not been confirmed for this reservation")


def set_reservation_status(
    reservation_id: int,
    new_status: str | ReservationStatus,
    actor: Actor,
    reason: str | None = None,
) -> BookingOutcome:
    try:
        status = parse_reservation_status(new_status)
        reservation = get_reservation(reservation_id)
        _authorize_transition(reservation, status, actor)
        transition_status(reservation, status, actor, reason)
    except BookingError as exc:
        db.session.rollback()
        return BookingOutcome.failure(exc)

    try:
        if status in RELEASING_STATUSES:
            release_claim(reservation, actor, status.value)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Status update %s -> %s failed", reservation_id, status.value, exc_info=True)
        return BookingOutcome.failure(
            PersistenceFailure(f"Reservation {reservation_id} could not be updated"),
            compensated=True,
        )

    logger.info("Reservation %s is now %s", reservation.reference, status.value)
    if status in NOTIFIED_STATUSES:
        notify_status_change(reservation)
    return BookingOutcome.success(reservation)


def delete_reservation(reservation_id: int, actor: Actor) -> BookingOutcome:
    try:
        if not actor.policy.may_delete:
            raise ValidationError("Only administrators can delete reservations")
        reservation = get_reservation(reservation_id)
    except BookingError as exc:
        return BookingOutcome.failure(exc)

    proof_path = reservation.proof_path
    reference = reservation.reference
    try:
        if reservation.is_active:
            release_claim(reservation, actor, "deleted")
        log_event(ReservationEventType.DELETED, f"{reference} deleted", actor, reservation)
        delete_entry(reservation)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Could not delete reservation %s", reservation_id, exc_info=True)
        return BookingOutcome.failure(
            PersistenceFailure(f"Reservation {reservation_id} could not be deleted"),
            compensated=True,
        )

    discard_artifact(proof_path)
    logger.info("Reservation %s deleted by user %s", reference, actor.user_id)
    return BookingOutcome.success()


def change_resource_status(resource_ref: str | ResourceRef, new_status: str, actor: Actor) -> BookingOutcome:
    try:
        if not actor.policy.may_manage_resources:
            raise ValidationError("Only administrators can change resource status")
        ref = parse_resource_ref(resource_ref)
        try:
            status = ResourceStatus((new_status or "").strip().lower())
        except ValueError as exc:
            raise ValidationError(f"Invalid resource status '{new_status}'") from exc
        if status not in MANUAL_RESOURCE_STATUSES:
            raise ValidationError("Resources become reserved only through a reservation")
        resource = find_resource(ref)
        if resource.status == status:
            return BookingOutcome.success(resource=resource)
        claims = list_by_resource(ref)
        if claims:
            raise Conflict(f"{ref} is claimed by {claims[0].reference}")
    except BookingError as exc:
        return BookingOutcome.failure(exc)

    try:
        if not compare_and_set_status(ref, resource.status, status):
            db.session.rollback()
            return BookingOutcome.failure(Conflict(f"{ref} changed while updating; reload and retry"))
        log_event(
            ReservationEventType.RESOURCE_STATUS_CHANGED,
            f"{resource.status.value} -> {status.value}",
            actor,
            ref=ref,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.error("Could not change status of %s", ref, exc_info=True)
        return BookingOutcome.failure(PersistenceFailure(f"Status of {ref} could not be changed"), compensated=True)

    logger.info("Resource %s set to %s by user %s", ref, status.value, actor.user_id)
    return BookingOutcome.success(resource=find_resource(ref))


def expire_pending_reservations(now: datetime | None = None) -> ExpiryResult:
    ttl_hours = current_app.config.get("PENDING_RESERVATION_TTL_HOURS")
    if not ttl_hours:
        logger.info("Pending reservation expiry is disabled")
        return ExpiryResult(enabled=False)

    cutoff = (now or utcnow()) - timedelta(hours=int(ttl_hours))
    candidates = db.session.execute(
        select(Reservation.id)
        .where(Reservation.status == ReservationStatus.PENDING, Reservation.created_at < cutoff)
        .order_by(Reservation.id.asc())
    ).scalars().all()

    system = Actor.system()
    result = ExpiryResult()
    for reservation_id in candidates:
        outcome = set_reservation_status(reservation_id, ReservationStatus.CANCELLED, system)
        if not outcome.ok:
            logger.warning("Could not expire reservation %s: %s", reservation_id, outcome.error)
            result.failed.append(reservation_id)
            continue
        log_event(
            ReservationEventType.EXPIRED,
            f"Pending for more than {ttl_hours}h",
            system,
            outcome.reservation,
        )
        db.session.commit()
        result.expired.append(reservation_id)
    return result
