"""Monetization ledger database models.

This DB is the source of truth for creator accounts, transactions, balances,
payouts, the webhook audit log and the service-local outbox.
"""

from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from creatorpay.common.db import Base, JsonType


class CreatorAccount(Base):
    """One row per platform user who can earn money or hold Stars."""

    __tablename__ = "creator_accounts"
    __table_args__ = (CheckConstraint("stars_balance >= 0", name="ck_creator_stars_non_negative"),)

    creator_id: Mapped[str] = mapped_column(String, primary_key=True)
    can_monetize: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    stars_balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class ProviderAccount(Base):
    """A creator's linked account at one payment provider."""

    __tablename__ = "provider_accounts"
    __table_args__ = (UniqueConstraint("creator_id", "provider", name="uq_provider_account_creator"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    creator_id: Mapped[str] = mapped_column(ForeignKey("creator_accounts.creator_id"), index=True)
    provider: Mapped[str] = mapped_column(String)
    external_account_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String, default="none")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Transaction(Base):
    """One monetary event tied to exactly one provider reference."""

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("provider", "provider_reference", name="uq_transaction_provider_ref"),
        Index("ix_transactions_creator_created_at", "creator_id", "created_at"),
    )

    transaction_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    creator_id: Mapped[str] = mapped_column(String, index=True)
    payer_id: Mapped[str] = mapped_column(String, index=True)
    kind: Mapped[str] = mapped_column(String)
    provider: Mapped[str] = mapped_column(String)
    routing: Mapped[str] = mapped_column(String)
    amount_cents: Mapped[int] = mapped_column(Integer)
    fee_cents: Mapped[int] = mapped_column(Integer)
    net_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    provider_reference: Mapped[str] = mapped_column(String)
    provider_capture_id: Mapped[str | None] = mapped_column(String, nullable=True)
    stars_amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    description: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Balance(Base):
    """Per-creator money balance; mutated only through `BalanceLedger.apply_delta`."""

    __tablename__ = "balances"
    __table_args__ = (
        CheckConstraint("available_cents >= 0", name="ck_balance_available_non_negative"),
        CheckConstraint("pending_cents >= 0", name="ck_balance_pending_non_negative"),
    )

    creator_id: Mapped[str] = mapped_column(String, primary_key=True)
    available_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_earned_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="usd")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_payout_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Payout(Base):
    """One attempt to move a creator's available balance out to a provider."""

    __tablename__ = "payouts"
    __table_args__ = (UniqueConstraint("provider", "provider_reference", name="uq_payout_provider_ref"),)

    payout_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    creator_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    amount_cents: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    provider_reference: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class WebhookEvent(Base):
    """Append-only audit row for every authenticated provider delivery."""

    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    provider: Mapped[str] = mapped_column(String)
    provider_event_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String)
    reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    outcome: Mapped[str] = mapped_column(String, index=True)
    payload: Mapped[dict] = mapped_column(JsonType)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OutboxEvent(Base):
    """Domain events waiting to be published to Kafka."""

    __tablename__ = "outbox_events"
    __table_args__ = (Index("ix_outbox_events_status_created_at", "status", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    aggregate_type: Mapped[str] = mapped_column(String)
    aggregate_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    topic: Mapped[str] = mapped_column(String)
    payload: Mapped[dict] = mapped_column(JsonType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
