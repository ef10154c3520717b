"""Initial shipping schema: users, systems, pallets, slots, activity.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-19

Run with:
    alembic upgrade head
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column(
            "role",
            sa.Enum("ADMINISTRATOR", "SUPERVISOR", "OPERATOR", "VIEWER", name="userrole"),
            server_default="OPERATOR",
        ),
        sa.Column("is_active", sa.Boolean(), server_default="true"),
        sa.Column("custom_permissions", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "systems",
        sa.Column("service_tag", sa.String(50), primary_key=True),
        sa.Column("ppid", sa.String(100)),
        sa.Column("dpn", sa.String(50)),
        sa.Column("config", sa.String(50)),
        sa.Column("dell_customer", sa.String(100)),
        sa.Column("issue", sa.Text()),
        sa.Column("location", sa.String(100)),
        sa.Column("doa_number", sa.String(20)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        "pallets",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("pallet_number", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), server_default="open"),
        sa.Column("locked", sa.Boolean(), server_default="false"),
        sa.Column("shape", sa.String(30)),
        sa.Column("created_by", sa.String(36)),
        sa.Column("released_by", sa.String(36)),
        sa.Column("is_deleted", sa.Boolean(), server_default="false"),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("released_at", sa.DateTime()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_pallets_pallet_number", "pallets", ["pallet_number"], unique=True)
    op.create_index("ix_pallets_status", "pallets", ["status"])
    op.create_index(
        "uq_pallets_open_shape", "pallets", ["shape"],
        unique=True,
        postgresql_where=sa.text(
            "status = 'open' AND is_deleted = false AND shape IS NOT NULL"
        ),
    )

    op.create_table(
        "pallet_slots",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("pallet_id", sa.String(36), sa.ForeignKey("pallets.id"), nullable=False),
        sa.Column("slot_index", sa.Integer(), nullable=False),
        sa.Column(
            "service_tag", sa.String(50),
            sa.ForeignKey("systems.service_tag"), nullable=False,
        ),
        sa.Column("added_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("removed_at", sa.DateTime()),
        sa.CheckConstraint("slot_index >= 0 AND slot_index < 9", name="ck_pallet_slots_index"),
    )
    op.create_index("ix_pallet_slots_pallet_id", "pallet_slots", ["pallet_id"])
    # One active occupant per slot, one active slot per system
    op.create_index(
        "uq_pallet_slots_active_slot", "pallet_slots", ["pallet_id", "slot_index"],
        unique=True, postgresql_where=sa.text("removed_at IS NULL"),
    )
    op.create_index(
        "uq_pallet_slots_active_system", "pallet_slots", ["service_tag"],
        unique=True, postgresql_where=sa.text("removed_at IS NULL"),
    )

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36)),
        sa.Column("user_name", sa.String(200), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(50)),
        sa.Column("entity_code", sa.String(100)),
        sa.Column("summary", sa.Text()),
        sa.Column("details", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("ix_activity_logs_user_id", "activity_logs", ["user_id"])
    op.create_index("ix_activity_logs_action", "activity_logs", ["action"])
    op.create_index("ix_activity_logs_entity_type", "activity_logs", ["entity_type"])
    op.create_index("ix_activity_logs_created_at", "activity_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("activity_logs")
    op.drop_table("pallet_slots")
    op.drop_table("pallets")
    op.drop_table("systems")
    op.drop_table("users")
