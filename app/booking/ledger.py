from __future__ import annotations

from sqlalchemy import func, select

from app.booking.catalog import GRAVE_KINDS, ResourceRef
from app.booking.errors import NotFound, ValidationError
from app.booking.policy import Actor
from app.core.extensions import db
from app.core.models import (
    ACTIVE_RESERVATION_STATUSES,
    CatalogKind,
    Reservation,
    ReservationEvent,
    ReservationEventType,
    ReservationStatus,
    utcnow,
)

RESERVATION_TRANSITIONS: dict[ReservationStatus, set[ReservationStatus]] = {
    ReservationStatus.PENDING: {
        ReservationStatus.APPROVED,
        ReservationStatus.REJECTED,
        ReservationStatus.CANCELLED,
    },
    ReservationStatus.APPROVED: {
        ReservationStatus.COMPLETED,
        ReservationStatus.CANCELLED,
        ReservationStatus.REJECTED,
    },
    ReservationStatus.REJECTED: set(),
    ReservationStatus.CANCELLED: set(),
    ReservationStatus.COMPLETED: set(),
}

MAX_REJECTION_REASON = 500


def parse_reservation_status(value: str | ReservationStatus) -> ReservationStatus:
    if isinstance(value, ReservationStatus):
        return value
    raw = (value or "").strip().lower()
    try:
        return ReservationStatus(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid reservation status '{value}'") from exc


def create_entry(reservation: Reservation) -> Reservation:
    db.session.add(reservation)
    db.session.flush()
    return reservation


def find_reservation(reservation_id: int) -> Reservation | None:
    return db.session.get(Reservation, reservation_id, populate_existing=True)


def get_reservation(reservation_id: int) -> Reservation:
    reservation = find_reservation(reservation_id)
    if reservation is None:
        raise NotFound(f"Reservation {reservation_id} not found")
    return reservation


def list_by_resource(
    ref: ResourceRef,
    statuses: tuple[ReservationStatus, ...] = ACTIVE_RESERVATION_STATUSES,
    exclude_id: int | None = None,
) -> list[Reservation]:
    """Active reservations holding the resource, across every catalog row at its coordinate."""
    kinds = GRAVE_KINDS if ref.is_grave else (ref.kind,)
    query = select(Reservation).where(
        Reservation.catalog_kind.in_(kinds),
        Reservation.resource_code == ref.code,
        Reservation.status.in_(statuses),
    )
    if exclude_id is not None:
        query = query.where(Reservation.id != exclude_id)
    return list(db.session.execute(query.order_by(Reservation.id.asc())).scalars().all())


def transition_status(
    reservation: Reservation,
    new_status: ReservationStatus,
    actor: Actor,
    reason: str | None = None,
) -> None:
    allowed = RESERVATION_TRANSITIONS.get(reservation.status, set())
    if new_status not in allowed:
        raise ValidationError(f"Invalid transition: {reservation.status.value} -> {new_status.value}")
    if new_status == ReservationStatus.APPROVED:
        reservation.approved_by_id = actor.user_id
        reservation.approved_at = utcnow()
    elif new_status == ReservationStatus.REJECTED:
        cleaned = (reason or "").strip()
        if len(cleaned) > MAX_REJECTION_REASON:
            raise ValidationError(f"Rejection reason exceeds {MAX_REJECTION_REASON} characters")
        reservation.rejection_reason = cleaned
    reservation.status = new_status
    db.session.add(reservation)


def delete_entry(reservation: Reservation) -> None:
    db.session.delete(reservation)


def log_event(
    event_type: ReservationEventType,
    details: str,
    actor: Actor | None = None,
    reservation: Reservation | None = None,
    ref: ResourceRef | None = None,
) -> None:
    kind = reservation.catalog_kind if reservation is not None else ref.kind
    code = reservation.resource_code if reservation is not None else ref.code
    db.session.add(
        ReservationEvent(
            reservation_id=reservation.id if reservation is not None else None,
            catalog_kind=kind,
            resource_code=code,
            event_type=event_type,
            details=details[:255],
            user_id=actor.user_id if actor else None,
            user_role=actor.role.value if actor else "",
        )
    )


def reservation_events(reservation_id: int) -> list[ReservationEvent]:
    return list(
        db.session.execute(
            select(ReservationEvent)
            .where(ReservationEvent.reservation_id == reservation_id)
            .order_by(ReservationEvent.id.asc())
        ).scalars().all()
    )


def reservation_as_dict(reservation: Reservation) -> dict[str, object]:
    return {
        "id": reservation.id,
        "reference": reservation.reference,
        "resource": reservation.resource_ref,
        "catalog": reservation.catalog_kind.value,
        "resource_code": reservation.resource_code,
        "status": reservation.status.value,
        "actor_role": reservation.actor_role.value,
        "source": reservation.source.value,
        "client": {
            "id": reservation.client_id,
            "name": reservation.client_name,
            "contact": reservation.client_contact,
            "email": reservation.client_email,
        },
        "deceased": {
            "name": reservation.deceased_name,
            "date_of_birth": reservation.deceased_birth_date.isoformat() if reservation.deceased_birth_date else None,
            "date_of_death": reservation.deceased_death_date.isoformat() if reservation.deceased_death_date else None,
            "relationship": reservation.deceased_relationship,
        },
        "payment": {
            "method": reservation.payment_method.value,
            "amount": str(reservation.payment_amount),
            "total_price": str(reservation.total_price),
            "has_proof": bool(reservation.proof_path),
            "proof_uploaded_at": reservation.proof_uploaded_at.isoformat() if reservation.proof_uploaded_at else None,
        },
        "confirmation_sent_at": (
            reservation.confirmation_sent_at.isoformat() if reservation.confirmation_sent_at else None
        ),
        "special_requirements": reservation.special_requirements,
        "staff_notes": reservation.staff_notes,
        "staff_id": reservation.staff_id,
        "approved_by": reservation.approved_by_id,
        "approved_at": reservation.approved_at.isoformat() if reservation.approved_at else None,
        "rejection_reason": reservation.rejection_reason,
        "created_at": reservation.created_at.isoformat() if reservation.created_at else None,
    }


def list_reservations(
    filters: dict[str, str],
    page: int = 1,
    page_size: int = 20,
    client_id: int | None = None,
) -> dict[str, object]:
    query = select(Reservation)
    if client_id is not None:
        query = query.where(Reservation.client_id == client_id)
    status_raw = (filters.get("status") or "").strip()
    if status_raw:
        query = query.where(Reservation.status == parse_reservation_status(status_raw))
    catalog_raw = (filters.get("catalog") or "").strip().lower()
    if catalog_raw:
        try:
            query = query.where(Reservation.catalog_kind == CatalogKind(catalog_raw))
        except ValueError as exc:
            raise ValidationError(f"Unknown catalog '{catalog_raw}'") from exc
    resource_raw = (filters.get("resource_code") or "").strip().upper()
    if resource_raw:
        query = query.where(Reservation.resource_code == resource_raw)
    search = (filters.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        query = query.where(Reservation.client_name.ilike(like) | Reservation.deceased_name.ilike(like))

    safe_page = page if page > 0 else 1
    safe_size = max(1, min(page_size, 100))
    total = db.session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    rows = (
        db.session.execute(
            query.order_by(Reservation.created_at.desc(), Reservation.id.desc())
            .offset((safe_page - 1) * safe_size)
            .limit(safe_size)
        )
        .scalars()
        .all()
    )
    return {
        "rows": [reservation_as_dict(row) for row in rows],
        "page": safe_page,
        "page_size": safe_size,
        "total": total,
        "pages": max(1, (total + safe_size - 1) // safe_size),
    }
