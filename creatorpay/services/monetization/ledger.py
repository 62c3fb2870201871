"""Balance ledger: the only code path that mutates a creator's `balances` row."""

from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from creatorpay.common.errors import ConcurrencyConflict, NegativeBalance
from creatorpay.common.logging import logger
from creatorpay.common.metrics import negative_balance_total
from creatorpay.services.monetization.models import Balance
from creatorpay.services.monetization.schemas import BalanceResponse


class BalanceLedger:
    """Atomic per-creator balance deltas.

    Every mutation runs inside the caller's unit of work: the row is
    get-or-created, locked with `SELECT ... FOR UPDATE`, and written back with
    an `UPDATE` guarded by `(creator_id, version)`. Row locks serialize work on
    one creator while leaving other creators uncontended; the version guard
    catches lost updates on engines without row locks.
    """

    def __init__(self, session_factory, currency: str = "usd", service_name: str = "monetization") -> None:
        self.session_factory = session_factory
        self.currency = currency
        self.service_name = service_name

    def lock(self, db, creator_id: str) -> Balance:
        """Return the creator's balance row locked for update, creating it if absent."""

        balance = self._select_for_update(db, creator_id)
        if balance is not None:
            return balance
        try:
            with db.begin_nested():
                db.add(
                    Balance(
                        creator_id=creator_id,
                        available_cents=0,
                        pending_cents=0,
                        total_earned_cents=0,
                        currency=self.currency,
                        version=0,
                    )
                )
        except IntegrityError:
            # Another first event for this creator inserted the row first.
            logger.info("balance row created concurrently creator_id=%s", creator_id)
        return self._select_for_update(db, creator_id)

    def _select_for_update(self, db, creator_id: str) -> Balance | None:
        return db.execute(
            select(Balance).where(Balance.creator_id == creator_id).with_for_update()
        ).scalar_one_or_none()

    def apply_delta(
        self,
        db,
        creator_id: str,
        available_delta: int = 0,
        pending_delta: int = 0,
        total_earned_delta: int = 0,
        payout_at: datetime | None = None,
    ) -> Balance:
        """Apply signed deltas to one creator's balance as a single atomic write."""

        balance = self.lock(db, creator_id)
        new_available = balance.available_cents + available_delta
        new_pending = balance.pending_cents + pending_delta
        new_total = balance.total_earned_cents + total_earned_delta
        if new_available < 0 or new_pending < 0 or new_total < 0:
            negative_balance_total.labels(service=self.service_name).inc()
            logger.critical(
                "negative balance rejected creator_id=%s available=%s pending=%s total=%s "
                "available_delta=%s pending_delta=%s total_delta=%s",
                creator_id,
                balance.available_cents,
                balance.pending_cents,
                balance.total_earned_cents,
                available_delta,
                pending_delta,
                total_earned_delta,
            )
            raise NegativeBalance(
                f"delta would make balance negative for creator {creator_id} "
                f"(available={new_available}, pending={new_pending}, total={new_total})"
            )

        current_version = balance.version
        values = {
            "available_cents": new_available,
            "pending_cents": new_pending,
            "total_earned_cents": new_total,
            "version": current_version + 1,
            "updated_at": datetime.now(timezone.utc),
        }
        if payout_at is not None:
            values["last_payout_at"] = payout_at
        result = db.execute(
            update(Balance)
            .where(Balance.creator_id == creator_id, Balance.version == current_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflict(
                f"balance version conflict for creator {creator_id} (expected version {current_version})"
            )
        db.refresh(balance)
        logger.info(
            "balance delta applied creator_id=%s available_delta=%s pending_delta=%s total_delta=%s version=%s",
            creator_id,
            available_delta,
            pending_delta,
            total_earned_delta,
            balance.version,
        )
        return balance

    def get_balance(self, creator_id: str) -> BalanceResponse:
        """Read-only snapshot; a creator without a row reads as all zeros."""

        with self.session_factory() as db:
            balance = db.get(Balance, creator_id)
            if balance is None:
                return BalanceResponse(
                    creator_id=creator_id,
                    available_cents=0,
                    pending_cents=0,
                    total_earned_cents=0,
                    currency=self.currency,
                )
            return BalanceResponse(
                creator_id=creator_id,
                available_cents=balance.available_cents,
                pending_cents=balance.pending_cents,
                total_earned_cents=balance.total_earned_cents,
                currency=balance.currency,
            )
