from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select, update

from app.booking.errors import NotFound, ValidationError
from app.core.extensions import db
from app.core.models import (
    CATALOG_REF_PREFIXES,
    CatalogKind,
    ColumbariumSlot,
    GARDEN_CELL_MODELS,
    GardenCellType,
    Lot,
    ResourceStatus,
    coordinate_code,
    utcnow,
)

COORDINATE_CODE_RE = re.compile(r"^([A-Z])-(\d{1,3})-(\d{1,3})$")
SLOT_CODE_RE = re.compile(r"^([A-Z])([1-9])([A-Z])(\d{2})(\d{2})$")
REF_PREFIX_KINDS: dict[str, CatalogKind] = {prefix: kind for kind, prefix in CATALOG_REF_PREFIXES.items()}
# Legacy lots and garden grid cells describe the same physical graves.
GRAVE_KINDS = (CatalogKind.LEGACY_LOT, CatalogKind.GARDEN_GRID)


@dataclass(frozen=True)
class ResourceRef:
    kind: CatalogKind
    code: str

    def __str__(self) -> str:
        return f"{CATALOG_REF_PREFIXES[self.kind]}:{self.code}"

    @property
    def is_grave(self) -> bool:
        return self.kind in GRAVE_KINDS


@dataclass
class Resource:
    ref: ResourceRef
    status: ResourceStatus
    price: Decimal
    sqm: Decimal | None = None
    label: str = ""
    attributes: dict[str, object] = field(default_factory=dict)

    def as_dict(self) -> dict[str, object]:
        return {
            "ref": str(self.ref),
            "catalog": self.ref.kind.value,
            "code": self.ref.code,
            "status": self.status.value,
            "price": str(self.price),
            "sqm": str(self.sqm) if self.sqm is not None else None,
            "label": self.label,
            **self.attributes,
        }


def _split_coordinate(code: str) -> tuple[str, int, int]:
    match = COORDINATE_CODE_RE.match(code)
    if not match:
        raise ValidationError(f"Invalid grave code '{code}', expected GARDEN-ROW-COLUMN")
    garden, row, column = match.groups()
    return garden, int(row), int(column)


class ResourceCatalog:
    """One physical resource table behind the uniform find / compare-and-set contract.

    Subclasses only decide how a resource code maps onto rows. Status writes
    happen exclusively through ``compare_and_set_status``, a conditional
    UPDATE whose affected row count is the outcome.
    """

    kind: CatalogKind
    model: type

    def normalize(self, code: str) -> str:
        raise NotImplementedError

    def _criteria(self, code: str) -> list:
        raise NotImplementedError

    def _to_resource(self, row) -> Resource:
        raise NotImplementedError

    def _listing(self):
        return select(self.model)

    def ref(self, code: str) -> ResourceRef:
        return ResourceRef(self.kind, self.normalize(code))

    def get_row(self, code: str):
        normalized = self.normalize(code)
        row = db.session.execute(
            select(self.model)
            .where(*self._criteria(normalized))
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if row is None:
            raise NotFound(f"Resource {ResourceRef(self.kind, normalized)} not found")
        return row

    def find(self, code: str) -> Resource:
        return self._to_resource(self.get_row(code))

    def compare_and_set_status(self, code: str, expected: ResourceStatus, new: ResourceStatus) -> bool:
        normalized = self.normalize(code)
        result = db.session.execute(
            update(self.model)
            .where(*self._criteria(normalized), self.model.status == expected)
            .values(status=new, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    def list_resources(self) -> list[Resource]:
        rows = db.session.execute(self._listing()).scalars().all()
        return [self._to_resource(row) for row in rows]


class LegacyLotCatalog(ResourceCatalog):
    kind = CatalogKind.LEGACY_LOT
    model = Lot

    def normalize(self, code: str) -> str:
        garden, row, column = _split_coordinate((code or "").strip().upper())
        if garden not in {"A", "B", "C"}:
            raise ValidationError(f"Legacy lots only exist in gardens A-C, got '{code}'")
        return coordinate_code(garden, row, column)

    def _criteria(self, code: str) -> list:
        return [Lot.lot_code == code]

    def _listing(self):
        return select(Lot).order_by(Lot.garden.asc(), Lot.row.asc(), Lot.col.asc())

    def _to_resource(self, lot: Lot) -> Resource:
        return Resource(
            ref=ResourceRef(self.kind, lot.lot_code),
            status=lot.status,
            price=Decimal(lot.price),
            sqm=Decimal(lot.sqm),
            label=f"Lot {lot.lot_code}",
            attributes={
                "garden": lot.garden,
                "row": lot.row,
                "column": lot.col,
                "location": lot.location,
                "price_per_sqm": str(lot.price_per_sqm),
            },
        )


class GardenGridCatalog(ResourceCatalog):
    kind = CatalogKind.GARDEN_GRID

    def __init__(self, garden: str):
        self.garden = garden
        self.model = GARDEN_CELL_MODELS[garden]

    def normalize(self, code: str) -> str:
        garden, row, column = _split_coordinate((code or "").strip().upper())
        if garden != self.garden:
            raise ValidationError(f"Code '{code}' does not belong to garden {self.garden}")
        return coordinate_code(garden, row, column)

    def _criteria(self, code: str) -> list:
        _garden, row, column = _split_coordinate(code)
        return [
            self.model.cell_type == GardenCellType.GRAVE,
            self.model.row == row,
            self.model.col == column,
        ]

    def _listing(self):
        return (
            select(self.model)
            .where(self.model.cell_type == GardenCellType.GRAVE)
            .order_by(self.model.row.asc(), self.model.col.asc())
        )

    def _to_resource(self, cell) -> Resource:
        return Resource(
            ref=ResourceRef(self.kind, cell.code),
            status=cell.status,
            price=Decimal(cell.price),
            sqm=Decimal(cell.sqm),
            label=f"Garden {self.garden} grave {cell.row}-{cell.col}",
            attributes={
                "garden": self.garden,
                "row": cell.row,
                "column": cell.col,
                "feature_id": cell.feature_id,
            },
        )


class ColumbariumCatalog(ResourceCatalog):
    kind = CatalogKind.COLUMBARIUM
    model = ColumbariumSlot

    def normalize(self, code: str) -> str:
        value = (code or "").strip().upper()
        if not SLOT_CODE_RE.match(value):
            raise ValidationError(f"Invalid columbarium slot code '{code}'")
        return value

    def _criteria(self, code: str) -> list:
        return [ColumbariumSlot.slot_code == code]

    def _listing(self):
        return select(ColumbariumSlot).order_by(
            ColumbariumSlot.floor.asc(),
            ColumbariumSlot.section.asc(),
            ColumbariumSlot.row.asc(),
            ColumbariumSlot.col.asc(),
        )

    def _to_resource(self, slot: ColumbariumSlot) -> Resource:
        return Resource(
            ref=ResourceRef(self.kind, slot.slot_code),
            status=slot.status,
            price=slot.total_price,
            label=f"{slot.building} F{slot.floor} {slot.section} R{slot.row} C{slot.col}",
            attributes={
                "building": slot.building,
                "floor": slot.floor,
                "section": slot.section,
                "row": slot.row,
                "column": slot.col,
                "level": slot.level.value,
                "slot_type": slot.slot_type.value,
                "base_price": str(slot.base_price),
                "maintenance_fee": str(slot.maintenance_fee),
                "lease_period_years": slot.lease_period_years,
                "features": slot.features,
            },
        )


LEGACY_LOTS = LegacyLotCatalog()
COLUMBARIUM = ColumbariumCatalog()
GARDEN_GRIDS: dict[str, GardenGridCatalog] = {garden: GardenGridCatalog(garden) for garden in GARDEN_CELL_MODELS}


def catalog_for(kind: CatalogKind, code: str = "") -> ResourceCatalog:
    if kind == CatalogKind.LEGACY_LOT:
        return LEGACY_LOTS
    if kind == CatalogKind.COLUMBARIUM:
        return COLUMBARIUM
    garden = (code or "").strip().upper()[:1]
    catalog = GARDEN_GRIDS.get(garden)
    if catalog is None:
        raise ValidationError(f"Unknown garden '{garden or '-'}'")
    return catalog


def grave_catalogs() -> list[ResourceCatalog]:
    # Legacy lots first so garden grid entries win on de-duplication.
    return [LEGACY_LOTS, *GARDEN_GRIDS.values()]


def all_catalogs() -> list[ResourceCatalog]:
    return [*grave_catalogs(), COLUMBARIUM]


def parse_resource_ref(raw: str | ResourceRef) -> ResourceRef:
    if isinstance(raw, ResourceRef):
        return raw
    value = (raw or "").strip()
    prefix, separator, code = value.partition(":")
    if not separator or not code.strip():
        raise ValidationError(f"Invalid resource reference '{value}', expected e.g. 'garden:A-3-7'")
    kind = REF_PREFIX_KINDS.get(prefix.strip().lower())
    if kind is None:
        raise ValidationError(f"Unknown catalog '{prefix}'")
    return catalog_for(kind, code).ref(code)


def find_resource(ref: ResourceRef) -> Resource:
    return catalog_for(ref.kind, ref.code).find(ref.code)


def compare_and_set_status(ref: ResourceRef, expected: ResourceStatus, new: ResourceStatus) -> bool:
    return catalog_for(ref.kind, ref.code).compare_and_set_status(ref.code, expected, new)


def coordinate_refs(ref: ResourceRef) -> list[ResourceRef]:
    """Every catalog row standing for the same physical resource as ``ref``.

    Columbarium slots only ever have one row. A grave coordinate can have a
    legacy lot and a garden grid cell; rows are returned in GRAVE_KINDS order
    whatever kind was named, so concurrent writers lock them in one order.
    """
    if not ref.is_grave:
        return [ref]
    refs: list[ResourceRef] = []
    for kind in GRAVE_KINDS:
        if kind == ref.kind:
            refs.append(ref)
            continue
        try:
            catalog = catalog_for(kind, ref.code)
            catalog.get_row(ref.code)
        except (NotFound, ValidationError):
            continue
        refs.append(catalog.ref(ref.code))
    return refs


def compare_and_set_coordinate(ref: ResourceRef, expected: ResourceStatus, new: ResourceStatus) -> bool:
    """Compare-and-set every row at the resource's coordinate.

    All or nothing: on False some rows may already be written, so the caller
    rolls the transaction back.
    """
    return all(compare_and_set_status(target, expected, new) for target in coordinate_refs(ref))
