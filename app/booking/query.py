from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, select

from app.booking.catalog import (
    COLUMBARIUM,
    GARDEN_GRIDS,
    GRAVE_KINDS,
    ResourceRef,
    all_catalogs,
    find_resource,
    grave_catalogs,
    parse_resource_ref,
)
from app.booking.errors import ValidationError
from app.booking.ledger import list_by_resource
from app.core.extensions import db
from app.core.models import (
    ACTIVE_RESERVATION_STATUSES,
    CatalogKind,
    GARDEN_LAYOUTS,
    Reservation,
    ReservationStatus,
    ResourceStatus,
    SLOT_LEVEL_MULTIPLIERS,
    SLOT_TYPE_MULTIPLIERS,
)
from app.core.utils import CENT

FEATURE_PRICES: dict[str, Decimal] = {
    "glass": Decimal("5000.00"),
    "lighting": Decimal("3000.00"),
    "ventilation": Decimal("2000.00"),
}
STANDARD_LEASE_YEARS = 25
MAX_LEASE_DISCOUNT = Decimal("0.15")
DOWN_PAYMENT_RATIO = Decimal("0.30")
INSTALLMENT_MONTHS = (12, 24, 36)


@dataclass
class ClaimIssue:
    code: str
    ref: str
    message: str


def _active_claims(kinds: tuple[CatalogKind, ...]) -> list[Reservation]:
    return list(
        db.session.execute(
            select(Reservation)
            .where(Reservation.catalog_kind.in_(kinds), Reservation.status.in_(ACTIVE_RESERVATION_STATUSES))
            .order_by(Reservation.id.asc())
        ).scalars().all()
    )


def _claim_summary(reservation: Reservation) -> dict[str, object]:
    return {"reference": reservation.reference, "status": reservation.status.value}


def unified_graves(filters: dict[str, str] | None = None) -> list[dict[str, object]]:
    filters = filters or {}
    merged: dict[str, dict[str, object]] = {}
    for catalog in grave_catalogs():
        for resource in catalog.list_resources():
            item = resource.as_dict()
            item["id"] = resource.ref.code
            item["catalog_status"] = resource.status.value
            merged[resource.ref.code] = item

    # Read-only overlay: the catalogs are never written from here.
    for claim in _active_claims(GRAVE_KINDS):
        item = merged.get(claim.resource_code)
        if item is None:
            continue
        item["status"] = ResourceStatus.RESERVED.value
        item["reservation"] = _claim_summary(claim)

    rows = sorted(merged.values(), key=lambda item: (item["garden"], item["row"], item["column"]))
    garden = (filters.get("garden") or "").strip().upper()
    if garden:
        rows = [row for row in rows if row["garden"] == garden]
    status = (filters.get("status") or "").strip().lower()
    if status:
        rows = [row for row in rows if row["status"] == status]
    return rows


def get_resource_status(resource_ref: str | ResourceRef) -> ResourceStatus:
    ref = parse_resource_ref(resource_ref)
    resource = find_resource(ref)
    if list_by_resource(ref):
        return ResourceStatus.RESERVED
    return resource.status


def resource_view(resource_ref: str | ResourceRef) -> dict[str, object]:
    ref = parse_resource_ref(resource_ref)
    resource = find_resource(ref)
    claims = list_by_resource(ref)
    data = resource.as_dict()
    data["catalog_status"] = resource.status.value
    if claims:
        data["status"] = ResourceStatus.RESERVED.value
        data["reservation"] = _claim_summary(claims[0])
    return data


def garden_overview() -> list[dict[str, object]]:
    rows: list[dict[str, object]] = []
    for garden, layout in GARDEN_LAYOUTS.items():
        resources = GARDEN_GRIDS[garden].list_resources()
        counts = Counter(resource.status.value for resource in resources)
        rows.append(
            {
                "garden": garden,
                "name": layout["name"],
                "rows": layout["rows"],
                "columns": layout["columns"],
                "capacity": int(layout["rows"]) * int(layout["columns"]),
                "graves": len(resources),
                "status_counts": dict(counts),
            }
        )
    return rows


def columbarium_layout(floor: int | None = None, section: str | None = None) -> dict[str, object]:
    claims = {claim.resource_code: claim for claim in _active_claims((CatalogKind.COLUMBARIUM,))}
    floors: dict[int, dict[str, list[dict[str, object]]]] = {}
    totals: Counter[str] = Counter()
    wanted_section = (section or "").strip().upper()
    for resource in COLUMBARIUM.list_resources():
        slot_floor = int(resource.attributes["floor"])
        slot_section = str(resource.attributes["section"])
        if floor is not None and slot_floor != floor:
            continue
        if wanted_section and slot_section != wanted_section:
            continue
        item = resource.as_dict()
        claim = claims.get(resource.ref.code)
        if claim is not None:
            item["status"] = ResourceStatus.RESERVED.value
            item["reservation"] = _claim_summary(claim)
        totals[str(item["status"])] += 1
        floors.setdefault(slot_floor, {}).setdefault(slot_section, []).append(item)

    return {
        "floors": [
            {
                "floor": floor_no,
                "sections": [
                    {
                        "section": section_name,
                        "slots": slots,
                        "status_counts": dict(Counter(str(slot["status"]) for slot in slots)),
                    }
                    for section_name, slots in sorted(sections.items())
                ],
            }
            for floor_no, sections in sorted(floors.items())
        ],
        "status_counts": dict(totals),
    }


def quote_columbarium_slot(
    code: str,
    lease_years: int | None = None,
    features: list[str] | None = None,
) -> dict[str, object]:
    slot = COLUMBARIUM.get_row(code)
    years = lease_years if lease_years is not None else slot.lease_period_years
    if years < 1 or years > 99:
        raise ValidationError("Lease period must be between 1 and 99 years")

    requested = {name.strip().lower() for name in (features or []) if name and name.strip()}
    unknown = requested - set(FEATURE_PRICES)
    if unknown:
        raise ValidationError(f"Unknown features: {', '.join(sorted(unknown))}")
    # Features the slot already has are included in its base price.
    extras = sorted(requested - set(slot.features))
    features_cost = sum((FEATURE_PRICES[name] for name in extras), Decimal("0"))

    level_multiplier = SLOT_LEVEL_MULTIPLIERS[slot.level]
    size_multiplier = SLOT_TYPE_MULTIPLIERS[slot.slot_type]
    slot_price = (Decimal(slot.base_price) * level_multiplier * size_multiplier).quantize(CENT)
    subtotal = slot_price + features_cost

    discount_rate = Decimal("0")
    if years > STANDARD_LEASE_YEARS:
        discount_rate = min(Decimal(years - STANDARD_LEASE_YEARS) / 100, MAX_LEASE_DISCOUNT)
    discount = (subtotal * discount_rate).quantize(CENT)
    total = subtotal - discount

    down_payment = (total * DOWN_PAYMENT_RATIO).quantize(CENT)
    remaining = total - down_payment
    return {
        "slot": slot.slot_code,
        "level": slot.level.value,
        "slot_type": slot.slot_type.value,
        "lease_years": years,
        "base_price": str(slot.base_price),
        "level_multiplier": str(level_multiplier),
        "size_multiplier": str(size_multiplier),
        "slot_price": str(slot_price),
        "features": extras,
        "features_cost": str(features_cost.quantize(CENT)),
        "discount_rate": str(discount_rate),
        "discount": str(discount),
        "total": str(total),
        "maintenance_fee": str(slot.maintenance_fee),
        "payment_options": {
            "full": {"amount": str(total)},
            "down_payment": {"down": str(down_payment), "remaining": str(remaining)},
            "installments": [
                {
                    "months": months,
                    "down": str(down_payment),
                    "monthly": str((remaining / months).quantize(CENT)),
                }
                for months in INSTALLMENT_MONTHS
            ],
        },
    }


def reservation_statistics() -> dict[str, object]:
    by_status = dict(
        db.session.execute(
            select(Reservation.status, func.count(Reservation.id)).group_by(Reservation.status)
        ).all()
    )
    by_catalog = dict(
        db.session.execute(
            select(Reservation.catalog_kind, func.count(Reservation.id)).group_by(Reservation.catalog_kind)
        ).all()
    )
    return {
        "total": sum(by_status.values()),
        "by_status": {status.value: by_status.get(status, 0) for status in ReservationStatus},
        "by_catalog": {kind.value: by_catalog.get(kind, 0) for kind in CatalogKind},
    }


def _coordinate_key(ref: ResourceRef) -> tuple[str, str]:
    return ("grave" if ref.is_grave else ref.kind.value, ref.code)


def audit_claims() -> list[ClaimIssue]:
    """Cross-check catalog status against active reservations.

    Graves are grouped by coordinate, so a legacy lot claim and a garden grid
    claim on the same grave count as a double claim. Reports double claims,
    reserved resources nobody claims, claimed coordinates with a row that is
    not reserved, and claims on unknown resources.
    """
    issues: list[ClaimIssue] = []
    claims_by_key: dict[tuple[str, str], list[Reservation]] = {}
    for claim in _active_claims(tuple(CatalogKind)):
        ref = ResourceRef(claim.catalog_kind, claim.resource_code)
        claims_by_key.setdefault(_coordinate_key(ref), []).append(claim)

    known: dict[ResourceRef, ResourceStatus] = {}
    rows_by_key: dict[tuple[str, str], list[ResourceRef]] = {}
    for catalog in all_catalogs():
        for resource in catalog.list_resources():
            known[resource.ref] = resource.status
            rows_by_key.setdefault(_coordinate_key(resource.ref), []).append(resource.ref)

    for key, claims in sorted(claims_by_key.items()):
        claim_refs = [ResourceRef(claim.catalog_kind, claim.resource_code) for claim in claims]
        if len(claims) > 1:
            references = ", ".join(claim.reference for claim in claims)
            issues.append(ClaimIssue("CLM001", str(claim_refs[0]), f"multiple active reservations: {references}"))
        for ref in dict.fromkeys(claim_refs):
            if ref not in known:
                issues.append(ClaimIssue("CLM004", str(ref), "active reservation on unknown resource"))
        for ref in rows_by_key.get(key, []):
            if known[ref] != ResourceStatus.RESERVED:
                issues.append(ClaimIssue("CLM003", str(ref), f"claimed but catalog status is {known[ref].value}"))

    for ref, status in sorted(known.items(), key=lambda item: str(item[0])):
        if status == ResourceStatus.RESERVED and _coordinate_key(ref) not in claims_by_key:
            issues.append(ClaimIssue("CLM002", str(ref), "reserved without an active reservation"))
    return issues
