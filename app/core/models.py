from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from flask_login import UserMixin
from sqlalchemy import CheckConstraint, Enum as SAEnum, ForeignKey, Index, UniqueConstraint, event, inspect
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship, validates
from werkzeug.security import generate_password_hash

from app.core.extensions import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class ActorRole(str, Enum):
    CLIENT = "client"
    STAFF = "staff"
    ADMIN = "admin"


class ResourceStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"
    UNAVAILABLE = "unavailable"


class CatalogKind(str, Enum):
    LEGACY_LOT = "legacy_lot"
    GARDEN_GRID = "garden_grid"
    COLUMBARIUM = "columbarium"


class ReservationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ReservationSource(str, Enum):
    WEB = "web"
    CHATBOT = "chatbot"
    COUNTER = "counter"


class PaymentMethod(str, Enum):
    GCASH = "gcash"
    BANK_TRANSFER = "bank_transfer"
    CREDIT_CARD = "credit_card"
    CASH = "cash"
    CHECK = "check"


class GardenCellType(str, Enum):
    GRAVE = "grave"
    NICHE = "niche"


class SlotLevel(str, Enum):
    GROUND = "ground"
    EYE = "eye"
    HIGH = "high"


class SlotType(str, Enum):
    SINGLE = "single"
    DOUBLE = "double"
    FAMILY = "family"


class ReservationEventType(str, Enum):
    CREATED = "CREATED"
    AUTO_APPROVED = "AUTO_APPROVED"
    STATUS_CHANGE = "STATUS_CHANGE"
    PROOF_ATTACHED = "PROOF_ATTACHED"
    CONFIRMATION_SENT = "CONFIRMATION_SENT"
    RESOURCE_RELEASED = "RESOURCE_RELEASED"
    RELEASE_SKIPPED = "RELEASE_SKIPPED"
    COMPENSATED = "COMPENSATED"
    DELETED = "DELETED"
    EXPIRED = "EXPIRED"
    RESOURCE_STATUS_CHANGED = "RESOURCE_STATUS_CHANGED"


ACTIVE_RESERVATION_STATUSES = (ReservationStatus.PENDING, ReservationStatus.APPROVED)

CATALOG_REF_PREFIXES: dict[CatalogKind, str] = {
    CatalogKind.LEGACY_LOT: "lot",
    CatalogKind.GARDEN_GRID: "garden",
    CatalogKind.COLUMBARIUM: "columbarium",
}

# Nominal size of each garden; seeded grids may cover only part of it.
GARDEN_LAYOUTS: dict[str, dict[str, int | str]] = {
    "A": {"name": "Garden A", "rows": 20, "columns": 42},
    "B": {"name": "Garden B", "rows": 20, "columns": 61},
    "C": {"name": "Garden C", "rows": 20, "columns": 42},
    "D": {"name": "Garden D", "rows": 20, "columns": 50},
}

SLOT_LEVEL_MULTIPLIERS: dict[SlotLevel, Decimal] = {
    SlotLevel.GROUND: Decimal("0.8"),
    SlotLevel.EYE: Decimal("1.0"),
    SlotLevel.HIGH: Decimal("0.9"),
}

SLOT_TYPE_MULTIPLIERS: dict[SlotType, Decimal] = {
    SlotType.SINGLE: Decimal("1.0"),
    SlotType.DOUBLE: Decimal("1.8"),
    SlotType.FAMILY: Decimal("2.5"),
}


def coordinate_code(garden: str, row: int, column: int) -> str:
    return f"{garden.upper()}-{row}-{column}"


def slot_code_for(building: str, floor: int, section: str, row: int, column: int) -> str:
    return f"{building.strip()[:1].upper()}{floor}{section.upper()}{row:02d}{column:02d}"


class User(UserMixin, db.Model):
    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(db.String(255), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    phone: Mapped[str] = mapped_column(db.String(40), nullable=False, default="")
    password_hash: Mapped[str] = mapped_column(db.String(255), nullable=False)
    role: Mapped[ActorRole] = mapped_column(
        SAEnum(ActorRole, name="actor_role", values_callable=_enum_values),
        nullable=False,
        default=ActorRole.CLIENT,
    )
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    @property
    def is_staff(self) -> bool:
        return self.role in {ActorRole.STAFF, ActorRole.ADMIN}


class Lot(db.Model):
    # Legacy flat plot table, predates the garden grids.
    __tablename__ = "lot"
    __table_args__ = (
        UniqueConstraint("garden", "row", "col", name="uq_lot_location"),
        CheckConstraint("sqm > 0", name="ck_lot_sqm"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    lot_code: Mapped[str] = mapped_column(db.String(20), unique=True, nullable=False)
    garden: Mapped[str] = mapped_column(db.String(1), nullable=False)
    row: Mapped[int] = mapped_column(nullable=False)
    col: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[ResourceStatus] = mapped_column(
        SAEnum(ResourceStatus, name="resource_status", values_callable=_enum_values),
        nullable=False,
        default=ResourceStatus.AVAILABLE,
    )
    sqm: Mapped[Decimal] = mapped_column(db.Numeric(6, 2), nullable=False, default=Decimal("2.00"))
    price_per_sqm: Mapped[Decimal] = mapped_column(db.Numeric(10, 2), nullable=False, default=Decimal("4000.00"))
    price: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False, default=Decimal("8000.00"))
    location: Mapped[str] = mapped_column(db.String(120), nullable=False, default="")
    occupant_name: Mapped[str] = mapped_column(db.String(120), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    @validates("garden")
    def _validate_garden(self, _key: str, value: str) -> str:
        garden = (value or "").strip().upper()
        if garden not in {"A", "B", "C"}:
            raise ValueError("Legacy lots only exist in gardens A, B and C")
        return garden


class GardenCellMixin:
    GARDEN = ""

    id: Mapped[int] = mapped_column(primary_key=True)
    feature_id: Mapped[str] = mapped_column(db.String(40), unique=True, nullable=False)
    cell_type: Mapped[GardenCellType] = mapped_column(
        SAEnum(GardenCellType, name="garden_cell_type", values_callable=_enum_values),
        nullable=False,
        default=GardenCellType.GRAVE,
    )
    row: Mapped[int] = mapped_column(nullable=False)
    col: Mapped[int] = mapped_column(nullable=False)
    # Niches hang off a grave and keep its coordinates.
    grave_row: Mapped[int | None] = mapped_column(nullable=True)
    grave_col: Mapped[int | None] = mapped_column(nullable=True)
    status: Mapped[ResourceStatus] = mapped_column(
        SAEnum(ResourceStatus, name="resource_status", values_callable=_enum_values),
        nullable=False,
        default=ResourceStatus.AVAILABLE,
    )
    sqm: Mapped[Decimal] = mapped_column(db.Numeric(6, 2), nullable=False, default=Decimal("2.00"))
    price: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False, default=Decimal("50000.00"))
    occupant_name: Mapped[str] = mapped_column(db.String(120), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    @declared_attr.directive
    def __table_args__(cls):
        return (UniqueConstraint("cell_type", "row", "col", name=f"uq_{cls.__tablename__}_cell"),)

    @property
    def code(self) -> str:
        return coordinate_code(self.GARDEN, self.row, self.col)


class GardenACell(GardenCellMixin, db.Model):
    __tablename__ = "garden_a_cell"
    GARDEN = "A"


class GardenBCell(GardenCellMixin, db.Model):
    __tablename__ = "garden_b_cell"
    GARDEN = "B"


class GardenCCell(GardenCellMixin, db.Model):
    __tablename__ = "garden_c_cell"
    GARDEN = "C"


class GardenDCell(GardenCellMixin, db.Model):
    __tablename__ = "garden_d_cell"
    GARDEN = "D"


GARDEN_CELL_MODELS: dict[str, type[GardenCellMixin]] = {
    "A": GardenACell,
    "B": GardenBCell,
    "C": GardenCCell,
    "D": GardenDCell,
}


class ColumbariumSlot(db.Model):
    __tablename__ = "columbarium_slot"
    __table_args__ = (
        UniqueConstraint("building", "floor", "section", "row", "col", name="uq_columbarium_slot_location"),
        CheckConstraint("lease_period_years > 0", name="ck_columbarium_slot_lease"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    slot_code: Mapped[str] = mapped_column(db.String(12), unique=True, nullable=False)
    building: Mapped[str] = mapped_column(db.String(60), nullable=False, default="Main Columbarium")
    floor: Mapped[int] = mapped_column(nullable=False)
    section: Mapped[str] = mapped_column(db.String(1), nullable=False)
    row: Mapped[int] = mapped_column(nullable=False)
    col: Mapped[int] = mapped_column(nullable=False)
    level: Mapped[SlotLevel] = mapped_column(
        SAEnum(SlotLevel, name="slot_level", values_callable=_enum_values),
        nullable=False,
        default=SlotLevel.EYE,
    )
    slot_type: Mapped[SlotType] = mapped_column(
        SAEnum(SlotType, name="slot_type", values_callable=_enum_values),
        nullable=False,
        default=SlotType.SINGLE,
    )
    status: Mapped[ResourceStatus] = mapped_column(
        SAEnum(ResourceStatus, name="resource_status", values_callable=_enum_values),
        nullable=False,
        default=ResourceStatus.AVAILABLE,
    )
    base_price: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False, default=Decimal("50000.00"))
    maintenance_fee: Mapped[Decimal] = mapped_column(db.Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    lease_period_years: Mapped[int] = mapped_column(nullable=False, default=25)
    has_glass: Mapped[bool] = mapped_column(nullable=False, default=False)
    has_lighting: Mapped[bool] = mapped_column(nullable=False, default=False)
    has_ventilation: Mapped[bool] = mapped_column(nullable=False, default=True)
    notes: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def total_price(self) -> Decimal:
        price = (
            Decimal(self.base_price)
            * SLOT_LEVEL_MULTIPLIERS[self.level]
            * SLOT_TYPE_MULTIPLIERS[self.slot_type]
        )
        return price.quantize(Decimal("0.01"))

    @property
    def features(self) -> list[str]:
        flags = {
            "glass": self.has_glass,
            "lighting": self.has_lighting,
            "ventilation": self.has_ventilation,
        }
        return [name for name, enabled in flags.items() if enabled]


class Reservation(db.Model):
    __tablename__ = "reservation"
    __table_args__ = (
        Index("ix_reservation_resource_status", "catalog_kind", "resource_code", "status"),
        CheckConstraint("payment_amount >= 0", name="ck_reservation_payment_amount"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    catalog_kind: Mapped[CatalogKind] = mapped_column(
        SAEnum(CatalogKind, name="catalog_kind", values_callable=_enum_values),
        nullable=False,
    )
    resource_code: Mapped[str] = mapped_column(db.String(20), nullable=False)
    actor_role: Mapped[ActorRole] = mapped_column(
        SAEnum(ActorRole, name="actor_role", values_callable=_enum_values),
        nullable=False,
    )
    source: Mapped[ReservationSource] = mapped_column(
        SAEnum(ReservationSource, name="reservation_source", values_callable=_enum_values),
        nullable=False,
        default=ReservationSource.WEB,
    )
    status: Mapped[ReservationStatus] = mapped_column(
        SAEnum(ReservationStatus, name="reservation_status", values_callable=_enum_values),
        nullable=False,
        default=ReservationStatus.PENDING,
        index=True,
    )
    client_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True, index=True)
    staff_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    client_name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    client_contact: Mapped[str] = mapped_column(db.String(120), nullable=False)
    client_email: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    deceased_name: Mapped[str] = mapped_column(db.String(120), nullable=False, default="")
    deceased_birth_date: Mapped[date | None] = mapped_column(nullable=True)
    deceased_death_date: Mapped[date | None] = mapped_column(nullable=True)
    deceased_relationship: Mapped[str] = mapped_column(db.String(60), nullable=False, default="")
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SAEnum(PaymentMethod, name="payment_method", values_callable=_enum_values),
        nullable=False,
    )
    payment_amount: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    total_price: Mapped[Decimal] = mapped_column(db.Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    proof_path: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    proof_uploaded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    confirmation_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    special_requirements: Mapped[str] = mapped_column(db.String(500), nullable=False, default="")
    staff_notes: Mapped[str] = mapped_column(db.String(1000), nullable=False, default="")
    approved_by_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    rejection_reason: Mapped[str] = mapped_column(db.String(500), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    client = relationship("User", foreign_keys=[client_id])
    staff = relationship("User", foreign_keys=[staff_id])
    approved_by = relationship("User", foreign_keys=[approved_by_id])

    @property
    def reference(self) -> str:
        year = (self.created_at or utcnow()).year
        return f"RSV-{year}-{self.id or 0:06d}"

    @property
    def resource_ref(self) -> str:
        return f"{CATALOG_REF_PREFIXES[self.catalog_kind]}:{self.resource_code}"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RESERVATION_STATUSES


class ReservationEvent(db.Model):
    # Audit trail; rows outlive the reservation they describe.
    __tablename__ = "reservation_event"
    __table_args__ = (
        Index("ix_reservation_event_resource", "catalog_kind", "resource_code"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    reservation_id: Mapped[int | None] = mapped_column(nullable=True, index=True)
    catalog_kind: Mapped[CatalogKind] = mapped_column(
        SAEnum(CatalogKind, name="catalog_kind", values_callable=_enum_values),
        nullable=False,
    )
    resource_code: Mapped[str] = mapped_column(db.String(20), nullable=False)
    event_type: Mapped[ReservationEventType] = mapped_column(
        SAEnum(ReservationEventType, name="reservation_event_type"),
        nullable=False,
    )
    details: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    user_role: Mapped[str] = mapped_column(db.String(20), nullable=False, default="")
    event_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False, index=True)

    user = relationship("User")


@event.listens_for(Reservation, "after_update")
def reservation_after_update(_mapper, connection, target: Reservation) -> None:
    # Status history for every reservation transition.
    state = inspect(target)
    history = state.attrs.status.history
    if history.has_changes():
        previous = history.deleted[0] if history.deleted else None
        previous_label = previous.value if isinstance(previous, ReservationStatus) else str(previous or "-")
        connection.execute(
            ReservationEvent.__table__.insert().values(
                reservation_id=target.id,
                catalog_kind=target.catalog_kind,
                resource_code=target.resource_code,
                event_type=ReservationEventType.STATUS_CHANGE,
                details=f"{previous_label} -> {target.status.value}",
                user_id=None,
                user_role="",
                event_at=utcnow(),
            )
        )


def _seed_garden_cells(session) -> None:
    grave_prices = {
        "A": Decimal("5000.00"),
        "B": Decimal("8000.00"),
        "C": Decimal("8000.00"),
        "D": Decimal("50000.00"),
    }
    blocked = {
        ("A", 1, 1): ResourceStatus.OCCUPIED,
        ("A", 1, 2): ResourceStatus.OCCUPIED,
        ("A", 4, 8): ResourceStatus.MAINTENANCE,
        ("B", 2, 3): ResourceStatus.OCCUPIED,
        ("C", 1, 5): ResourceStatus.UNAVAILABLE,
        ("D", 3, 3): ResourceStatus.OCCUPIED,
    }
    for garden, model in GARDEN_CELL_MODELS.items():
        for row in range(1, 5):
            for column in range(1, 9):
                status = blocked.get((garden, row, column), ResourceStatus.AVAILABLE)
                session.add(
                    model(
                        feature_id=f"{garden}-G-{row:02d}-{column:02d}",
                        cell_type=GardenCellType.GRAVE,
                        row=row,
                        col=column,
                        status=status,
                        sqm=Decimal("2.00"),
                        price=grave_prices[garden],
                        occupant_name="Occupied (demo)" if status == ResourceStatus.OCCUPIED else "",
                    )
                )
        for index in range(1, 5):
            session.add(
                model(
                    feature_id=f"{garden}-N-{index:02d}",
                    cell_type=GardenCellType.NICHE,
                    row=1,
                    col=index,
                    grave_row=1,
                    grave_col=index,
                    sqm=Decimal("1.00"),
                    price=Decimal("25000.00"),
                )
            )


def _seed_legacy_lots(session) -> None:
    # Overlaps garden A/B coordinates on purpose; the grids take precedence on read.
    for garden in ("A", "B", "C"):
        for row in range(1, 3):
            for column in range(1, 5):
                session.add(
                    Lot(
                        lot_code=coordinate_code(garden, row, column),
                        garden=garden,
                        row=row,
                        col=column,
                        sqm=Decimal("2.00"),
                        price_per_sqm=Decimal("4000.00"),
                        price=Decimal("8000.00"),
                        location=f"Garden {garden}, Row {row}",
                    )
                )
    session.add(
        Lot(
            lot_code="A-15-23",
            garden="A",
            row=15,
            col=23,
            sqm=Decimal("2.00"),
            price_per_sqm=Decimal("4000.00"),
            price=Decimal("8000.00"),
            location="Garden A, Row 15",
        )
    )


def _seed_columbarium(session) -> None:
    building = "Main Columbarium"
    levels = {1: SlotLevel.GROUND, 2: SlotLevel.EYE, 3: SlotLevel.HIGH}
    blocked = {
        (1, "A", 1, 1): ResourceStatus.OCCUPIED,
        (1, "A", 1, 2): ResourceStatus.OCCUPIED,
        (2, "B", 3, 1): ResourceStatus.MAINTENANCE,
    }
    for floor in range(1, 4):
        for section in ("A", "B"):
            base = Decimal("50000.00")
            if floor <= 2:
                base *= Decimal("1.2")
            if section in {"A", "B"}:
                base *= Decimal("1.1")
            for row in range(1, 4):
                for column in range(1, 6):
                    if column == 5:
                        slot_type = SlotType.FAMILY
                    elif column == 4:
                        slot_type = SlotType.DOUBLE
                    else:
                        slot_type = SlotType.SINGLE
                    session.add(
                        ColumbariumSlot(
                            slot_code=slot_code_for(building, floor, section, row, column),
                            building=building,
                            floor=floor,
                            section=section,
                            row=row,
                            col=column,
                            level=levels[row],
                            slot_type=slot_type,
                            status=blocked.get((floor, section, row, column), ResourceStatus.AVAILABLE),
                            base_price=base.quantize(Decimal("0.01")),
                            maintenance_fee=Decimal("1500.00"),
                            lease_period_years=25,
                            has_glass=row == 2,
                            has_lighting=floor == 1,
                            has_ventilation=True,
                        )
                    )


def seed_demo_data(session) -> None:
    admin = User(
        email="admin@memorial.local",
        full_name="Admin Memorial",
        password_hash=generate_password_hash("admin123"),
        role=ActorRole.ADMIN,
    )
    staff = User(
        email="staff@memorial.local",
        full_name="Staff Memorial",
        password_hash=generate_password_hash("staff123"),
        role=ActorRole.STAFF,
    )
    client = User(
        email="client@memorial.local",
        full_name="Maria Santos",
        phone="09171234567",
        password_hash=generate_password_hash("client123"),
        role=ActorRole.CLIENT,
    )
    second_client = User(
        email="client2@memorial.local",
        full_name="Jose Reyes",
        phone="09179876543",
        password_hash=generate_password_hash("client123"),
        role=ActorRole.CLIENT,
    )
    session.add_all([admin, staff, client, second_client])
    session.flush()

    _seed_garden_cells(session)
    _seed_legacy_lots(session)
    _seed_columbarium(session)
    session.commit()
