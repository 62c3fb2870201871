"""add outbox and earnings hot-path indexes

Revision ID: 0002_monetization_hot_indexes
Revises: 0001_monetization
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_monetization_hot_indexes"
down_revision = "0001_monetization"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index("ix_outbox_events_status_created_at", "outbox_events", ["status", "created_at"])
    op.create_index("ix_transactions_creator_created_at", "transactions", ["creator_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_transactions_creator_created_at", table_name="transactions")
    op.drop_index("ix_outbox_events_status_created_at", table_name="outbox_events")
