"""lifecycle tables: assets, cycles, pickup batches, history, events

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610180001"
down_revision = None
branch_labels = None
depends_on = None

OPEN_CYCLE_PREDICATE = sa.text("status <> 'completed'")


def upgrade() -> None:
    op.create_table(
        "events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("actor_id", sa.String(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_events_event_type", "events", ["event_type"])
    op.create_index("ix_events_entity_type", "events", ["entity_type"])
    op.create_index("ix_events_entity_id", "events", ["entity_id"])
    op.create_index("ix_events_ts", "events", ["ts"])
    op.create_index("ix_events_actor_id", "events", ["actor_id"])

    op.create_table(
        "assets",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("code", sa.String(length=40), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("order_ref", sa.String(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code", name="uq_assets_code"),
    )
    op.create_index("ix_assets_code", "assets", ["code"])
    op.create_index("ix_assets_owner_id", "assets", ["owner_id"])
    op.create_index("ix_assets_status", "assets", ["status"])
    op.create_index("ix_assets_order_ref", "assets", ["order_ref"])
    op.create_index("ix_assets_created_at", "assets", ["created_at"])
    op.create_index("ix_assets_updated_at", "assets", ["updated_at"])
    op.create_index("ix_assets_owner_status", "assets", ["owner_id", "status"])

    op.create_table(
        "cycles",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("asset_id", sa.String(), nullable=False),
        sa.Column("owner_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("mat_type", sa.String(), nullable=True),
        sa.Column("company_id", sa.String(), nullable=True),
        sa.Column("contact_id", sa.String(), nullable=True),
        sa.Column("test_start_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("test_end_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pickup_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("driver_pickup_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("contract_signed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("contract_signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("contract_frequency", sa.String(), nullable=True),
        sa.Column("extensions_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("location_lat", sa.Float(), nullable=True),
        sa.Column("location_lng", sa.Float(), nullable=True),
        sa.Column("location_address", sa.String(), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["asset_id"], ["assets.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("extensions_count >= 0", name="ck_cycles_extensions_non_negative"),
    )
    op.create_index("ix_cycles_asset_id", "cycles", ["asset_id"])
    op.create_index("ix_cycles_owner_id", "cycles", ["owner_id"])
    op.create_index("ix_cycles_status", "cycles", ["status"])
    op.create_index("ix_cycles_company_id", "cycles", ["company_id"])
    op.create_index("ix_cycles_test_start_at", "cycles", ["test_start_at"])
    op.create_index("ix_cycles_created_at", "cycles", ["created_at"])
    op.create_index("ix_cycles_updated_at", "cycles", ["updated_at"])
    op.create_index("ix_cycles_owner_status", "cycles", ["owner_id", "status"])
    op.create_index("ix_cycles_company_status", "cycles", ["company_id", "status"])
    op.create_index(
        "uq_cycles_open_asset",
        "cycles",
        ["asset_id"],
        unique=True,
        postgresql_where=OPEN_CYCLE_PREDICATE,
        sqlite_where=OPEN_CYCLE_PREDICATE,
    )

    op.create_table(
        "pickup_batches",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=30), nullable=False),
        sa.Column("scheduled_date", sa.Date(), nullable=True),
        sa.Column("assigned_driver", sa.String(), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pickup_batches_status", "pickup_batches", ["status"])
    op.create_index("ix_pickup_batches_assigned_driver", "pickup_batches", ["assigned_driver"])
    op.create_index("ix_pickup_batches_created_at", "pickup_batches", ["created_at"])

    op.create_table(
        "pickup_items",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("cycle_id", sa.String(), nullable=False),
        sa.Column("picked_up", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("picked_up_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["batch_id"], ["pickup_batches.id"]),
        sa.ForeignKeyConstraint(["cycle_id"], ["cycles.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("batch_id", "cycle_id", name="uq_pickup_items_batch_cycle"),
    )
    op.create_index("ix_pickup_items_batch_id", "pickup_items", ["batch_id"])
    op.create_index("ix_pickup_items_cycle_id", "pickup_items", ["cycle_id"])

    op.create_table(
        "cycle_history",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("cycle_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("old_status", sa.String(), nullable=True),
        sa.Column("new_status", sa.String(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("performed_by", sa.String(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["cycle_id"], ["cycles.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_cycle_history_cycle_id", "cycle_history", ["cycle_id"])
    op.create_index("ix_cycle_history_action", "cycle_history", ["action"])
    op.create_index("ix_cycle_history_performed_by", "cycle_history", ["performed_by"])
    op.create_index("ix_cycle_history_at", "cycle_history", ["at"])
    op.create_index("ix_cycle_history_cycle_at", "cycle_history", ["cycle_id", "at"])


def downgrade() -> None:
    op.drop_table("cycle_history")
    op.drop_table("pickup_items")
    op.drop_table("pickup_batches")
    op.drop_index("uq_cycles_open_asset", table_name="cycles")
    op.drop_table("cycles")
    op.drop_table("assets")
    op.drop_table("events")
