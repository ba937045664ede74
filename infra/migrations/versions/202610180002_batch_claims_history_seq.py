"""cycle batch claims and per-cycle history sequence

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "202610180002"
down_revision = "202610180001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("cycles", sa.Column("pickup_batch_id", sa.String(), nullable=True))
    op.create_index("ix_cycles_pickup_batch_id", "cycles", ["pickup_batch_id"])
    op.execute(
        sa.text(
            "UPDATE cycles SET pickup_batch_id = ("
            " SELECT pi.batch_id FROM pickup_items pi"
            " JOIN pickup_batches pb ON pb.id = pi.batch_id"
            " WHERE pi.cycle_id = cycles.id AND pb.status IN ('pending', 'in_progress')"
            " ORDER BY pb.created_at DESC LIMIT 1"
            ") WHERE status <> 'completed'"
        )
    )

    op.add_column("cycle_history", sa.Column("seq", sa.Integer(), nullable=False, server_default="0"))
    op.execute(
        sa.text(
            "UPDATE cycle_history SET seq = ("
            " SELECT COUNT(*) FROM cycle_history h2"
            " WHERE h2.cycle_id = cycle_history.cycle_id"
            " AND (h2.at < cycle_history.at OR (h2.at = cycle_history.at AND h2.id <= cycle_history.id))"
            ")"
        )
    )
    op.create_index("uq_cycle_history_cycle_seq", "cycle_history", ["cycle_id", "seq"], unique=True)


def downgrade() -> None:
    op.drop_index("uq_cycle_history_cycle_seq", table_name="cycle_history")
    op.drop_column("cycle_history", "seq")
    op.drop_index("ix_cycles_pickup_batch_id", table_name="cycles")
    op.drop_column("cycles", "pickup_batch_id")
