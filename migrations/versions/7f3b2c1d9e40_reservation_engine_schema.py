"""reservation engine schema: catalogs, reservations and audit events

Revision ID: 7f3b2c1d9e40
Revises:
Create Date: 2026-10-19 09:30:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "7f3b2c1d9e40"
down_revision = None
branch_labels = None
depends_on = None


ACTOR_ROLE = postgresql.ENUM("client", "staff", "admin", name="actor_role", create_type=False)
RESOURCE_STATUS = postgresql.ENUM(
    "available",
    "reserved",
    "occupied",
    "maintenance",
    "unavailable",
    name="resource_status",
    create_type=False,
)
CATALOG_KIND = postgresql.ENUM("legacy_lot", "garden_grid", "columbarium", name="catalog_kind", create_type=False)
RESERVATION_STATUS = postgresql.ENUM(
    "pending",
    "approved",
    "rejected",
    "cancelled",
    "completed",
    name="reservation_status",
    create_type=False,
)
RESERVATION_SOURCE = postgresql.ENUM("web", "chatbot", "counter", name="reservation_source", create_type=False)
PAYMENT_METHOD = postgresql.ENUM(
    "gcash",
    "bank_transfer",
    "credit_card",
    "cash",
    "check",
    name="payment_method",
    create_type=False,
)
GARDEN_CELL_TYPE = postgresql.ENUM("grave", "niche", name="garden_cell_type", create_type=False)
SLOT_LEVEL = postgresql.ENUM("ground", "eye", "high", name="slot_level", create_type=False)
SLOT_TYPE = postgresql.ENUM("single", "double", "family", name="slot_type", create_type=False)
RESERVATION_EVENT_TYPE = postgresql.ENUM(
    "CREATED",
    "AUTO_APPROVED",
    "STATUS_CHANGE",
    "PROOF_ATTACHED",
    "CONFIRMATION_SENT",
    "RESOURCE_RELEASED",
    "RELEASE_SKIPPED",
    "COMPENSATED",
    "DELETED",
    "EXPIRED",
    "RESOURCE_STATUS_CHANGED",
    name="reservation_event_type",
    create_type=False,
)

ENUMS = (
    ACTOR_ROLE,
    RESOURCE_STATUS,
    CATALOG_KIND,
    RESERVATION_STATUS,
    RESERVATION_SOURCE,
    PAYMENT_METHOD,
    GARDEN_CELL_TYPE,
    SLOT_LEVEL,
    SLOT_TYPE,
    RESERVATION_EVENT_TYPE,
)

GARDEN_TABLES = ("garden_a_cell", "garden_b_cell", "garden_c_cell", "garden_d_cell")


def upgrade():
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    op.create_table(
        "user_account",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=120), nullable=False),
        sa.Column("phone", sa.String(length=40), nullable=False, server_default=""),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", ACTOR_ROLE, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "lot",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("lot_code", sa.String(length=20), nullable=False),
        sa.Column("garden", sa.String(length=1), nullable=False),
        sa.Column("row", sa.Integer(), nullable=False),
        sa.Column("col", sa.Integer(), nullable=False),
        sa.Column("status", RESOURCE_STATUS, nullable=False),
        sa.Column("sqm", sa.Numeric(6, 2), nullable=False),
        sa.Column("price_per_sqm", sa.Numeric(10, 2), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("location", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("occupant_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("sqm > 0", name="ck_lot_sqm"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("lot_code"),
        sa.UniqueConstraint("garden", "row", "col", name="uq_lot_location"),
    )

    for table_name in GARDEN_TABLES:
        op.create_table(
            table_name,
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("feature_id", sa.String(length=40), nullable=False),
            sa.Column("cell_type", GARDEN_CELL_TYPE, nullable=False),
            sa.Column("row", sa.Integer(), nullable=False),
            sa.Column("col", sa.Integer(), nullable=False),
            sa.Column("grave_row", sa.Integer(), nullable=True),
            sa.Column("grave_col", sa.Integer(), nullable=True),
            sa.Column("status", RESOURCE_STATUS, nullable=False),
            sa.Column("sqm", sa.Numeric(6, 2), nullable=False),
            sa.Column("price", sa.Numeric(12, 2), nullable=False),
            sa.Column("occupant_name", sa.String(length=120), nullable=False, server_default=""),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("feature_id"),
            sa.UniqueConstraint("cell_type", "row", "col", name=f"uq_{table_name}_cell"),
        )

    op.create_table(
        "columbarium_slot",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("slot_code", sa.String(length=12), nullable=False),
        sa.Column("building", sa.String(length=60), nullable=False),
        sa.Column("floor", sa.Integer(), nullable=False),
        sa.Column("section", sa.String(length=1), nullable=False),
        sa.Column("row", sa.Integer(), nullable=False),
        sa.Column("col", sa.Integer(), nullable=False),
        sa.Column("level", SLOT_LEVEL, nullable=False),
        sa.Column("slot_type", SLOT_TYPE, nullable=False),
        sa.Column("status", RESOURCE_STATUS, nullable=False),
        sa.Column("base_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("maintenance_fee", sa.Numeric(10, 2), nullable=False),
        sa.Column("lease_period_years", sa.Integer(), nullable=False),
        sa.Column("has_glass", sa.Boolean(), nullable=False),
        sa.Column("has_lighting", sa.Boolean(), nullable=False),
        sa.Column("has_ventilation", sa.Boolean(), nullable=False),
        sa.Column("notes", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("lease_period_years > 0", name="ck_columbarium_slot_lease"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slot_code"),
        sa.UniqueConstraint("building", "floor", "section", "row", "col", name="uq_columbarium_slot_location"),
    )

    op.create_table(
        "reservation",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("catalog_kind", CATALOG_KIND, nullable=False),
        sa.Column("resource_code", sa.String(length=20), nullable=False),
        sa.Column("actor_role", ACTOR_ROLE, nullable=False),
        sa.Column("source", RESERVATION_SOURCE, nullable=False),
        sa.Column("status", RESERVATION_STATUS, nullable=False),
        sa.Column("client_id", sa.Integer(), nullable=True),
        sa.Column("staff_id", sa.Integer(), nullable=True),
        sa.Column("client_name", sa.String(length=120), nullable=False),
        sa.Column("client_contact", sa.String(length=120), nullable=False),
        sa.Column("client_email", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("deceased_name", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("deceased_birth_date", sa.Date(), nullable=True),
        sa.Column("deceased_death_date", sa.Date(), nullable=True),
        sa.Column("deceased_relationship", sa.String(length=60), nullable=False, server_default=""),
        sa.Column("payment_method", PAYMENT_METHOD, nullable=False),
        sa.Column("payment_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("proof_path", sa.String(length=255), nullable=True),
        sa.Column("proof_uploaded_at", sa.DateTime(), nullable=True),
        sa.Column("confirmation_sent_at", sa.DateTime(), nullable=True),
        sa.Column("special_requirements", sa.String(length=500), nullable=False, server_default=""),
        sa.Column("staff_notes", sa.String(length=1000), nullable=False, server_default=""),
        sa.Column("approved_by_id", sa.Integer(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("rejection_reason", sa.String(length=500), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("payment_amount >= 0", name="ck_reservation_payment_amount"),
        sa.ForeignKeyConstraint(["approved_by_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["client_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["staff_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("reservation", schema=None) as batch_op:
        batch_op.create_index(
            "ix_reservation_resource_status",
            ["catalog_kind", "resource_code", "status"],
            unique=False,
        )
        batch_op.create_index(batch_op.f("ix_reservation_status"), ["status"], unique=False)
        batch_op.create_index(batch_op.f("ix_reservation_client_id"), ["client_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_reservation_created_at"), ["created_at"], unique=False)

    op.create_table(
        "reservation_event",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("reservation_id", sa.Integer(), nullable=True),
        sa.Column("catalog_kind", CATALOG_KIND, nullable=False),
        sa.Column("resource_code", sa.String(length=20), nullable=False),
        sa.Column("event_type", RESERVATION_EVENT_TYPE, nullable=False),
        sa.Column("details", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("user_role", sa.String(length=20), nullable=False, server_default=""),
        sa.Column("event_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    with op.batch_alter_table("reservation_event", schema=None) as batch_op:
        batch_op.create_index(
            "ix_reservation_event_resource",
            ["catalog_kind", "resource_code"],
            unique=False,
        )
        batch_op.create_index(batch_op.f("ix_reservation_event_reservation_id"), ["reservation_id"], unique=False)
        batch_op.create_index(batch_op.f("ix_reservation_event_event_at"), ["event_at"], unique=False)


def downgrade():
    with op.batch_alter_table("reservation_event", schema=None) as batch_op:
        batch_op.drop_index(batch_op.f("ix_reservation_event_event_at"))
        batch_op.drop_index(batch_op.f("ix_reservation_event_reservation_id"))
        batch_op.drop_index("ix_reservation_event_resource")
    op.drop_table("reservation_event")

    with op.batch_alter_table("reservation", schema=None) as batch_op:
        batch_op.drop_index(batch_op.f("ix_reservation_created_at"))
        batch_op.drop_index(batch_op.f("ix_reservation_client_id"))
        batch_op.drop_index(batch_op.f("ix_reservation_status"))
        batch_op.drop_index("ix_reservation_resource_status")
    op.drop_table("reservation")

    op.drop_table("columbarium_slot")
    for table_name in reversed(GARDEN_TABLES):
        op.drop_table(table_name)
    op.drop_table("lot")
    op.drop_table("user_account")

    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
