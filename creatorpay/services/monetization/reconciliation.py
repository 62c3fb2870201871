"""Webhook reconciliation engine.

Turns authenticated provider notifications into idempotent ledger
transitions. Providers redeliver freely and out of order; correctness rests on
three rules:

* authentication happens before any business field is read;
* a Transaction or Payout that is already terminal is never re-applied;
* balances only ever change by deltas, inside the same database transaction
  that moves the Transaction/Payout to its terminal state.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Mapping

from sqlalchemy import func, select, update

from creatorpay.common.config import MonetizationConfig
from creatorpay.common.db import unit_of_work
from creatorpay.common.errors import InvalidSignature
from creatorpay.common.logging import creator_id_ctx, event_id_ctx, logger
from creatorpay.common.metrics import (
    duplicate_events_skipped_total,
    orphan_events_total,
    payouts_total,
    webhook_events_total,
    webhook_signature_failures_total,
)
from creatorpay.common.outbox import enqueue_event
from creatorpay.common.state_machine import (
    PAYOUT_TRANSITIONS,
    TRANSACTION_TRANSITIONS,
    is_terminal,
    validate_transition,
)
from creatorpay.common.tracing import tracer
from creatorpay.services.monetization.accounts import AccountLinker, get_or_create_creator
from creatorpay.services.monetization.ledger import BalanceLedger
from creatorpay.services.monetization.models import (
    Balance,
    CreatorAccount,
    OutboxEvent,
    Payout,
    Transaction,
    WebhookEvent,
)
from creatorpay.services.monetization.providers import EventKind, ProviderEvent, ProviderRegistry
from creatorpay.services.monetization.schemas import ReconciliationResponse, StarsBalanceResponse
from creatorpay.services.monetization.stars import stars_for_amount


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    ORPHANED = "orphaned"
    IGNORED = "ignored"


@dataclass(frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    provider: str
    event_type: str
    reference: str | None = None


class ReconciliationEngine:
    """Applies provider events to transactions, payouts, balances and Stars."""

    def __init__(
        self,
        session_factory,
        providers: ProviderRegistry,
        ledger: BalanceLedger,
        accounts: AccountLinker,
        config: MonetizationConfig,
        service_name: str = "monetization",
    ) -> None:
        self.session_factory = session_factory
        self.providers = providers
        self.ledger = ledger
        self.accounts = accounts
        self.config = config
        self.service_name = service_name
        self._handlers = {
            EventKind.CHARGE_COMPLETED: self._charge_completed,
            EventKind.CHARGE_FAILED: self._charge_failed,
            EventKind.PAYOUT_COMPLETED: self._payout_completed,
            EventKind.PAYOUT_FAILED: self._payout_failed,
            EventKind.ACCOUNT_UPDATED: self._account_updated,
        }

    def handle_webhook(self, provider_name: str, body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        """Authenticate, normalise and apply one raw provider delivery."""

        provider = self.providers.get(provider_name)
        with tracer.start_as_current_span("webhook.handle") as span:
            span.set_attribute("provider", provider.name)
            try:
                event = provider.parse_webhook(body, headers)
            except InvalidSignature as exc:
                webhook_signature_failures_total.labels(service=self.service_name, provider=provider.name).inc()
                logger.warning("suspicious webhook rejected provider=%s reason=%s", provider.name, exc)
                raise
            span.set_attribute("event_type", event.event_type)
            return self.process_event(event)

    def process_event(self, event: ProviderEvent) -> WebhookResult:
        """Apply an already-authenticated event; safe to call any number of times."""

        event_id_ctx.set(event.event_id or "")
        if event.kind is EventKind.UNKNOWN:
            # Acknowledged so the provider does not keep redelivering it.
            logger.info("webhook ignored provider=%s event_type=%s", event.provider, event.event_type)
            outcome = unit_of_work(
                self.session_factory,
                lambda db: self._record(db, event, WebhookOutcome.IGNORED),
                attempts=self.config.storage_retry_attempts,
                service_name=self.service_name,
            )
        else:
            handler = self._handlers[event.kind]

            def work(db) -> WebhookOutcome:
                if event.reference is None and event.creator_id is None and event.payout_id is None:
                    logger.warning(
                        "webhook without reference provider=%s event_type=%s", event.provider, event.event_type
                    )
                    return self._record(db, event, WebhookOutcome.ORPHANED)
                return self._record(db, event, handler(db, event))

            outcome = unit_of_work(
                self.session_factory,
                work,
                attempts=self.config.storage_retry_attempts,
                service_name=self.service_name,
            )

        webhook_events_total.labels(
            service=self.service_name, provider=event.provider, outcome=outcome.value
        ).inc()
        if outcome is WebhookOutcome.DUPLICATE:
            duplicate_events_skipped_total.labels(service=self.service_name, provider=event.provider).inc()
        elif outcome is WebhookOutcome.ORPHANED:
            orphan_events_total.labels(service=self.service_name, provider=event.provider).inc()
        return WebhookResult(
            outcome=outcome, provider=event.provider, event_type=event.event_type, reference=event.reference
        )

    def _record(self, db, event: ProviderEvent, outcome: WebhookOutcome) -> WebhookOutcome:
        db.add(
            WebhookEvent(
                provider=event.provider,
                provider_event_id=event.event_id,
                event_type=event.event_type,
                reference=event.reference,
                outcome=outcome.value,
                payload=event.payload,
            )
        )
        return outcome

    def _lock_transaction(self, db, event: ProviderEvent) -> Transaction | None:
        return db.execute(
            select(Transaction)
            .where(Transaction.provider == event.provider, Transaction.provider_reference == event.reference)
            .with_for_update()
        ).scalar_one_or_none()

    def _lock_payout(self, db, event: ProviderEvent) -> Payout | None:
        payout = None
        if event.reference is not None:
            payout = db.execute(
                select(Payout)
                .where(Payout.provider == event.provider, Payout.provider_reference == event.reference)
                .with_for_update()
            ).scalar_one_or_none()
        if payout is None and event.payout_id is not None:
            # The provider can notify before its reference is saved on our side.
            payout = db.execute(
                select(Payout)
                .where(Payout.provider == event.provider, Payout.payout_id == event.payout_id)
                .with_for_update()
            ).scalar_one_or_none()
            if payout is not None and payout.provider_reference is None and event.reference is not None:
                payout.provider_reference = event.reference
                logger.info(
                    "payout matched by payout id payout_id=%s reference=%s", payout.payout_id, event.reference
                )
        return payout

    def _orphan(self, event: ProviderEvent) -> WebhookOutcome:
        logger.warning(
            "orphan webhook event provider=%s event_type=%s reference=%s",
            event.provider,
            event.event_type,
            event.reference,
        )
        return WebhookOutcome.ORPHANED

    def _duplicate(self, event: ProviderEvent, status: str) -> WebhookOutcome:
        logger.info(
            "duplicate event skipped provider=%s event_type=%s reference=%s status=%s",
            event.provider,
            event.event_type,
            event.reference,
            status,
        )
        return WebhookOutcome.DUPLICATE

    def _charge_completed(self, db, event: ProviderEvent) -> WebhookOutcome:
        tx = self._lock_transaction(db, event)
        if tx is None:
            return self._orphan(event)
        creator_id_ctx.set(tx.creator_id)
        if is_terminal(TRANSACTION_TRANSITIONS, tx.status):
            return self._duplicate(event, tx.status)

        validate_transition(TRANSACTION_TRANSITIONS, tx.status, "completed")
        tx.status = "completed"
        if event.capture_id:
            tx.provider_capture_id = event.capture_id

        if tx.kind == "stars_purchase":
            stars = stars_for_amount(tx.amount_cents, self.config.stars_per_unit)
            get_or_create_creator(db, tx.creator_id)
            db.execute(
                update(CreatorAccount)
                .where(CreatorAccount.creator_id == tx.creator_id)
                .values(stars_balance=CreatorAccount.stars_balance + stars)
                .execution_options(synchronize_session=False)
            )
            tx.stars_amount = stars
            logger.info("stars credited creator_id=%s stars=%s transaction_id=%s", tx.creator_id, stars, tx.transaction_id)
        elif tx.routing == "direct_transfer":
            # The creator's share already settled to their provider account.
            self.ledger.apply_delta(db, tx.creator_id, total_earned_delta=tx.net_cents)
        else:
            self.ledger.apply_delta(
                db, tx.creator_id, available_delta=tx.net_cents, total_earned_delta=tx.net_cents
            )

        enqueue_event(
            db,
            OutboxEvent,
            topic="transactions.completed",
            aggregate_type="transaction",
            aggregate_id=tx.transaction_id,
            creator_id=tx.creator_id,
            payload={
                "kind": tx.kind,
                "routing": tx.routing,
                "amount_cents": tx.amount_cents,
                "net_cents": tx.net_cents,
                "currency": tx.currency,
                "payer_id": tx.payer_id,
                "stars_amount": str(tx.stars_amount) if tx.stars_amount is not None else None,
            },
        )
        logger.info("transaction completed transaction_id=%s reference=%s", tx.transaction_id, tx.provider_reference)
        return WebhookOutcome.APPLIED

    def _charge_failed(self, db, event: ProviderEvent) -> WebhookOutcome:
        tx = self._lock_transaction(db, event)
        if tx is None:
            return self._orphan(event)
        creator_id_ctx.set(tx.creator_id)
        if is_terminal(TRANSACTION_TRANSITIONS, tx.status):
            if tx.status == "completed":
                logger.warning(
                    "charge failure after completion not applied transaction_id=%s event_type=%s",
                    tx.transaction_id,
                    event.event_type,
                )
            return self._duplicate(event, tx.status)

        validate_transition(TRANSACTION_TRANSITIONS, tx.status, "failed")
        tx.status = "failed"
        enqueue_event(
            db,
            OutboxEvent,
            topic="transactions.failed",
            aggregate_type="transaction",
            aggregate_id=tx.transaction_id,
            creator_id=tx.creator_id,
            payload={"kind": tx.kind, "reason": event.failure_reason, "payer_id": tx.payer_id},
        )
        logger.info("transaction failed transaction_id=%s reason=%s", tx.transaction_id, event.failure_reason)
        return WebhookOutcome.APPLIED

    def _payout_completed(self, db, event: ProviderEvent) -> WebhookOutcome:
        payout = self._lock_payout(db, event)
        if payout is None:
            return self._orphan(event)
        creator_id_ctx.set(payout.creator_id)
        if is_terminal(PAYOUT_TRANSITIONS, payout.status):
            return self._duplicate(event, payout.status)

        validate_transition(PAYOUT_TRANSITIONS, payout.status, "completed")
        payout.status = "completed"
        payout.processed_at = datetime.now(timezone.utc)
        self.ledger.apply_delta(db, payout.creator_id, pending_delta=-payout.amount_cents)
        enqueue_event(
            db,
            OutboxEvent,
            topic="payouts.completed",
            aggregate_type="payout",
            aggregate_id=payout.payout_id,
            creator_id=payout.creator_id,
            payload={"amount_cents": payout.amount_cents, "currency": payout.currency, "provider": payout.provider},
        )
        payouts_total.labels(service=self.service_name, status="completed").inc()
        logger.info("payout completed payout_id=%s reference=%s", payout.payout_id, payout.provider_reference)
        return WebhookOutcome.APPLIED

    def _payout_failed(self, db, event: ProviderEvent) -> WebhookOutcome:
        payout = self._lock_payout(db, event)
        if payout is None:
            return self._orphan(event)
        creator_id_ctx.set(payout.creator_id)
        if is_terminal(PAYOUT_TRANSITIONS, payout.status):
            return self._duplicate(event, payout.status)

        validate_transition(PAYOUT_TRANSITIONS, payout.status, "failed")
        payout.status = "failed"
        payout.failure_reason = event.failure_reason or "payout failed"
        payout.processed_at = datetime.now(timezone.utc)
        # Reverse the provisional debit: pending goes back to available.
        self.ledger.apply_delta(
            db,
            payout.creator_id,
            available_delta=payout.amount_cents,
            pending_delta=-payout.amount_cents,
        )
        enqueue_event(
            db,
            OutboxEvent,
            topic="payouts.failed",
            aggregate_type="payout",
            aggregate_id=payout.payout_id,
            creator_id=payout.creator_id,
            payload={"amount_cents": payout.amount_cents, "reason": payout.failure_reason},
        )
        payouts_total.labels(service=self.service_name, status="failed").inc()
        logger.info("payout failed payout_id=%s reason=%s", payout.payout_id, payout.failure_reason)
        return WebhookOutcome.APPLIED

    def _account_updated(self, db, event: ProviderEvent) -> WebhookOutcome:
        account = self.accounts.apply_account_update(db, event)
        if account is None:
            return self._orphan(event)
        creator_id_ctx.set(account.creator_id)
        return WebhookOutcome.APPLIED

    def conservation_report(self, creator_id: str) -> ReconciliationResponse:
        """Check available + pending against completed platform-held money in and payouts out."""

        with self.session_factory() as db:
            completed_net = db.execute(
                select(func.coalesce(func.sum(Transaction.net_cents), 0)).where(
                    Transaction.creator_id == creator_id,
                    Transaction.status == "completed",
                    Transaction.routing == "platform_held",
                    Transaction.kind != "stars_purchase",
                )
            ).scalar_one()
            completed_payouts = db.execute(
                select(func.coalesce(func.sum(Payout.amount_cents), 0)).where(
                    Payout.creator_id == creator_id,
                    Payout.status == "completed",
                )
            ).scalar_one()
            balance = db.get(Balance, creator_id)
            available = balance.available_cents if balance is not None else 0
            pending = balance.pending_cents if balance is not None else 0

        expected = int(completed_net) - int(completed_payouts)
        actual = available + pending
        if expected != actual:
            logger.error(
                "conservation check failed creator_id=%s expected=%s actual=%s", creator_id, expected, actual
            )
        return ReconciliationResponse(
            creator_id=creator_id,
            balanced=expected == actual,
            expected_cents=expected,
            actual_cents=actual,
            completed_net_cents=int(completed_net),
            completed_payout_cents=int(completed_payouts),
            available_cents=available,
            pending_cents=pending,
        )

    def get_stars_balance(self, creator_id: str) -> StarsBalanceResponse:
        with self.session_factory() as db:
            creator = db.get(CreatorAccount, creator_id)
            stars = creator.stars_balance if creator is not None else Decimal("0")
        return StarsBalanceResponse(creator_id=creator_id, stars=Decimal(stars).quantize(Decimal("0.01")))
