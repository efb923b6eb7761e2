"""add claim-path index for outbox polling

Revision ID: 0002_outbox_hot_index
Revises: 0001_minting
Create Date: 2026-10-18
"""

from alembic import op


revision = "0002_outbox_hot_index"
down_revision = "0001_minting"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_outbox_events_status_created_at",
        "outbox_events",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_outbox_events_status_processed_at",
        "outbox_events",
        ["status", "processed_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status_processed_at", table_name="outbox_events")
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
