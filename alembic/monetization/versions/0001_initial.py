"""initial monetization schema

Revision ID: 0001_monetization
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_monetization"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "creator_accounts",
        sa.Column("creator_id", sa.String(), nullable=False),
        sa.Column("can_monetize", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("stars_balance", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("creator_id"),
        sa.CheckConstraint("stars_balance >= 0", name="ck_creator_stars_non_negative"),
    )

    op.create_table(
        "provider_accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("creator_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("external_account_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["creator_id"], ["creator_accounts.creator_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("creator_id", "provider", name="uq_provider_account_creator"),
    )
    op.create_index("ix_provider_accounts_creator_id", "provider_accounts", ["creator_id"])
    op.create_index("ix_provider_accounts_external_account_id", "provider_accounts", ["external_account_id"])

    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.String(), nullable=False),
        sa.Column("creator_id", sa.String(), nullable=False),
        sa.Column("payer_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("routing", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("fee_cents", sa.Integer(), nullable=False),
        sa.Column("net_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("provider_reference", sa.String(), nullable=False),
        sa.Column("provider_capture_id", sa.String(), nullable=True),
        sa.Column("stars_amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("transaction_id"),
        sa.UniqueConstraint("provider", "provider_reference", name="uq_transaction_provider_ref"),
    )
    op.create_index("ix_transactions_creator_id", "transactions", ["creator_id"])
    op.create_index("ix_transactions_payer_id", "transactions", ["payer_id"])
    op.create_index("ix_transactions_status", "transactions", ["status"])

    op.create_table(
        "balances",
        sa.Column("creator_id", sa.String(), nullable=False),
        sa.Column("available_cents", sa.Integer(), nullable=False),
        sa.Column("pending_cents", sa.Integer(), nullable=False),
        sa.Column("total_earned_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("last_payout_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("creator_id"),
        sa.CheckConstraint("available_cents >= 0", name="ck_balance_available_non_negative"),
        sa.CheckConstraint("pending_cents >= 0", name="ck_balance_pending_non_negative"),
    )

    op.create_table(
        "payouts",
        sa.Column("payout_id", sa.String(), nullable=False),
        sa.Column("creator_id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("provider_reference", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("failure_reason", sa.String(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("payout_id"),
        sa.UniqueConstraint("provider", "provider_reference", name="uq_payout_provider_ref"),
    )
    op.create_index("ix_payouts_creator_id", "payouts", ["creator_id"])
    op.create_index("ix_payouts_status", "payouts", ["status"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("provider_event_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("reference", sa.String(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_webhook_events_provider_event_id", "webhook_events", ["provider_event_id"])
    op.create_index("ix_webhook_events_reference", "webhook_events", ["reference"])
    op.create_index("ix_webhook_events_outcome", "webhook_events", ["outcome"])

    op.create_table(
        "outbox_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("aggregate_type", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_outbox_events_aggregate_id", "outbox_events", ["aggregate_id"])
    op.create_index("ix_outbox_events_event_type", "outbox_events", ["event_type"])
    op.create_index("ix_outbox_events_status", "outbox_events", ["status"])


def downgrade() -> None:
    op.drop_index("ix_outbox_events_status", table_name="outbox_events")
    op.drop_index("ix_outbox_events_event_type", table_name="outbox_events")
    op.drop_index("ix_outbox_events_aggregate_id", table_name="outbox_events")
    op.drop_table("outbox_events")
    op.drop_index("ix_webhook_events_outcome", table_name="webhook_events")
    op.drop_index("ix_webhook_events_reference", table_name="webhook_events")
    op.drop_index("ix_webhook_events_provider_event_id", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("ix_payouts_status", table_name="payouts")
    op.drop_index("ix_payouts_creator_id", table_name="payouts")
    op.drop_table("payouts")
    op.drop_table("balances")
    op.drop_index("ix_transactions_status", table_name="transactions")
    op.drop_index("ix_transactions_payer_id", table_name="transactions")
    op.drop_index("ix_transactions_creator_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_provider_accounts_external_account_id", table_name="provider_accounts")
    op.drop_index("ix_provider_accounts_creator_id", table_name="provider_accounts")
    op.drop_table("provider_accounts")
    op.drop_table("creator_accounts")
