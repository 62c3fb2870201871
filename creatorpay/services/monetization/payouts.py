"""Payout processor: moves a creator's whole available balance out to a provider."""

import time
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import select

from creatorpay.common.config import MonetizationConfig
from creatorpay.common.db import unit_of_work
from creatorpay.common.errors import (
    AccountNotLinked,
    InsufficientBalance,
    MonetizationError,
    NotFound,
    ProviderRejected,
    TransientProviderError,
)
from creatorpay.common.logging import creator_id_ctx, logger
from creatorpay.common.metrics import payouts_total, retries_total
from creatorpay.common.outbox import enqueue_event
from creatorpay.common.state_machine import PAYOUT_TRANSITIONS, is_terminal, validate_transition
from creatorpay.services.monetization.accounts import find_provider_account
from creatorpay.services.monetization.ledger import BalanceLedger
from creatorpay.services.monetization.models import OutboxEvent, Payout
from creatorpay.services.monetization.providers import PaymentProvider, ProviderRegistry
from creatorpay.services.monetization.schemas import PayoutResponse


def to_payout_response(payout: Payout) -> PayoutResponse:
    return PayoutResponse(
        payout_id=payout.payout_id,
        creator_id=payout.creator_id,
        provider=payout.provider,
        amount_cents=payout.amount_cents,
        currency=payout.currency,
        status=payout.status,
        provider_reference=payout.provider_reference,
        failure_reason=payout.failure_reason,
    )


class PayoutProcessor:
    """Reserve, call the provider, then record or compensate.

    The reservation (available -> pending plus the pending Payout row) is
    committed before the provider is called, so a crash after the call can
    never hand the same money out twice. Completion or failure is settled later
    by the webhook engine; only a definite synchronous rejection is compensated
    here.
    """

    def __init__(
        self,
        session_factory,
        providers: ProviderRegistry,
        ledger: BalanceLedger,
        config: MonetizationConfig,
        service_name: str = "monetization",
    ) -> None:
        self.session_factory = session_factory
        self.providers = providers
        self.ledger = ledger
        self.config = config
        self.service_name = service_name

    def _run(self, work):
        return unit_of_work(
            self.session_factory,
            work,
            attempts=self.config.storage_retry_attempts,
            service_name=self.service_name,
        )

    def _destination(self, creator_id: str) -> tuple[PaymentProvider, str]:
        with self.session_factory() as db:
            for provider in self.providers.payout_candidates():
                account = find_provider_account(db, creator_id, provider.name)
                if account is not None and account.status == "active" and account.external_account_id:
                    return provider, account.external_account_id
        raise AccountNotLinked(f"creator {creator_id} has no active payout account")

    def request_payout(self, creator_id: str) -> str:
        """Pay out the full available balance; returns the new payout id."""

        creator_id_ctx.set(creator_id)
        provider, destination = self._destination(creator_id)
        payout_id = str(uuid4())

        def reserve(db) -> int:
            balance = self.ledger.lock(db, creator_id)
            amount = balance.available_cents
            if amount < self.config.min_payout_cents:
                raise InsufficientBalance(amount, self.config.min_payout_cents)
            self.ledger.apply_delta(
                db,
                creator_id,
                available_delta=-amount,
                pending_delta=amount,
                payout_at=datetime.now(timezone.utc),
            )
            db.add(
                Payout(
                    payout_id=payout_id,
                    creator_id=creator_id,
                    provider=provider.name,
                    amount_cents=amount,
                    currency=balance.currency,
                    status="pending",
                )
            )
            enqueue_event(
                db,
                OutboxEvent,
                topic="payouts.requested",
                aggregate_type="payout",
                aggregate_id=payout_id,
                creator_id=creator_id,
                payload={"amount_cents": amount, "currency": balance.currency, "provider": provider.name},
            )
            return amount

        amount = self._run(reserve)
        payouts_total.labels(service=self.service_name, status="requested").inc()
        logger.info("payout reserved payout_id=%s provider=%s amount=%s", payout_id, provider.name, amount)

        reference = self._submit(provider, payout_id, creator_id, amount, destination)

        def record_reference(db) -> None:
            payout = db.execute(
                select(Payout).where(Payout.payout_id == payout_id).with_for_update()
            ).scalar_one()
            # A fast webhook may have matched by payout id and saved it already.
            if payout.provider_reference is None:
                payout.provider_reference = reference

        self._run(record_reference)
        logger.info("payout submitted payout_id=%s reference=%s", payout_id, reference)
        return payout_id

    def _submit(
        self, provider: PaymentProvider, payout_id: str, creator_id: str, amount: int, destination: str
    ) -> str:
        """Call the provider until it answers, reusing `payout_id` as the idempotency key.

        Timeouts and unreadable answers are ambiguous: the provider may already
        hold the payout, so they are retried with the same id and never
        compensated. If every attempt is ambiguous the payout stays `pending`
        with its reservation intact and the provider webhook settles it. Only a
        rejection with no earlier ambiguous attempt releases the reservation.
        """

        attempts = max(1, self.config.payout_call_attempts)
        ambiguous = False
        for attempt in range(1, attempts + 1):
            try:
                return provider.create_payout(
                    payout_id=payout_id,
                    amount_cents=amount,
                    currency=self.config.currency,
                    destination_account_id=destination,
                )
            except ProviderRejected as exc:
                if not ambiguous:
                    self._compensate(payout_id, creator_id, amount, exc.message)
                    raise
                logger.error(
                    "payout rejected after unknown outcome, left pending payout_id=%s provider=%s error=%s",
                    payout_id,
                    provider.name,
                    exc.message,
                )
                raise TransientProviderError(f"payout {payout_id} outcome unknown at {provider.name}") from exc
            except Exception as exc:
                ambiguous = True
                retries_total.labels(service=self.service_name, dependency="provider").inc()
                reason = exc.message if isinstance(exc, MonetizationError) else repr(exc)
                if attempt == attempts:
                    logger.error(
                        "payout outcome unknown, left pending payout_id=%s provider=%s attempts=%s error=%s",
                        payout_id,
                        provider.name,
                        attempts,
                        reason,
                    )
                    raise TransientProviderError(
                        f"payout {payout_id} outcome unknown at {provider.name}: {reason}"
                    ) from exc
                delay = self.config.payout_retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "payout call retry=%s/%s payout_id=%s backoff_s=%s error=%s",
                    attempt,
                    attempts,
                    payout_id,
                    delay,
                    reason,
                )
                time.sleep(delay)
        raise TransientProviderError(f"payout {payout_id} was not submitted")

    def _compensate(self, payout_id: str, creator_id: str, amount: int, reason: str) -> None:
        def work(db) -> bool:
            payout = db.execute(
                select(Payout).where(Payout.payout_id == payout_id).with_for_update()
            ).scalar_one()
            if is_terminal(PAYOUT_TRANSITIONS, payout.status):
                return False
            validate_transition(PAYOUT_TRANSITIONS, payout.status, "failed")
            payout.status = "failed"
            payout.failure_reason = reason
            payout.processed_at = datetime.now(timezone.utc)
            self.ledger.apply_delta(db, creator_id, available_delta=amount, pending_delta=-amount)
            enqueue_event(
                db,
                OutboxEvent,
                topic="payouts.failed",
                aggregate_type="payout",
                aggregate_id=payout_id,
                creator_id=creator_id,
                payload={"amount_cents": amount, "reason": reason},
            )
            return True

        if not self._run(work):
            logger.info("payout already settled, compensation skipped payout_id=%s", payout_id)
            return
        payouts_total.labels(service=self.service_name, status="failed").inc()
        logger.warning("payout compensated payout_id=%s amount=%s reason=%s", payout_id, amount, reason)

    def get_payout(self, payout_id: str) -> PayoutResponse:
        with self.session_factory() as db:
            payout = db.get(Payout, payout_id)
            if payout is None:
                raise NotFound(f"payout {payout_id} not found")
            return to_payout_response(payout)

    def list_payouts(self, creator_id: str, limit: int = 50, offset: int = 0) -> list[PayoutResponse]:
        with self.session_factory() as db:
            rows = db.execute(
                select(Payout)
                .where(Payout.creator_id == creator_id)
                .order_by(Payout.created_at.desc(), Payout.payout_id)
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            return [to_payout_response(payout) for payout in rows]
