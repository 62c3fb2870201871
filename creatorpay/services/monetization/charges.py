"""Charge initiation: fee split, routing decision and the pending transaction."""

from decimal import ROUND_HALF_UP, Decimal
from uuid import uuid4

from sqlalchemy import select

from creatorpay.common.config import MonetizationConfig
from creatorpay.common.db import unit_of_work
from creatorpay.common.errors import InvalidAmount, MonetizationNotEnabled, NotFound
from creatorpay.common.logging import creator_id_ctx, logger
from creatorpay.common.metrics import charges_created_total
from creatorpay.services.monetization.accounts import find_provider_account
from creatorpay.services.monetization.models import CreatorAccount, Transaction
from creatorpay.services.monetization.providers import ProviderRegistry
from creatorpay.services.monetization.schemas import ChargeResponse, TransactionResponse

CHARGE_KINDS = ("tip", "stars_purchase", "subscription")


def compute_fee(amount_cents: int, fee_rate: Decimal, fixed_fee_cents: int) -> int:
    """Platform fee = round_half_up(amount * rate) + fixed, never more than the amount."""

    variable = (Decimal(amount_cents) * fee_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return min(amount_cents, int(variable) + fixed_fee_cents)


def to_transaction_response(tx: Transaction) -> TransactionResponse:
    return TransactionResponse(
        transaction_id=tx.transaction_id,
        creator_id=tx.creator_id,
        payer_id=tx.payer_id,
        kind=tx.kind,
        provider=tx.provider,
        routing=tx.routing,
        status=tx.status,
        amount_cents=tx.amount_cents,
        fee_cents=tx.fee_cents,
        net_cents=tx.net_cents,
        currency=tx.currency,
        stars_amount=tx.stars_amount,
    )


class ChargeInitiator:
    """Opens provider payment intents and records them as pending transactions."""

    def __init__(
        self,
        session_factory,
        providers: ProviderRegistry,
        config: MonetizationConfig,
        service_name: str = "monetization",
    ) -> None:
        self.session_factory = session_factory
        self.providers = providers
        self.config = config
        self.service_name = service_name

    def create_charge(
        self,
        payer_id: str,
        creator_id: str,
        kind: str,
        amount_cents: int,
        currency: str | None = None,
        provider_name: str | None = None,
        description: str | None = None,
    ) -> ChargeResponse:
        """Create a provider intent and persist its pending transaction.

        The transaction row is committed before the client token is returned,
        so a webhook that races ahead of the client still finds it.
        """

        if kind not in CHARGE_KINDS:
            raise ValueError(f"unsupported charge kind {kind}")
        if amount_cents < self.config.min_charge_cents:
            raise InvalidAmount(
                f"amount {amount_cents} is below the minimum charge of {self.config.min_charge_cents}"
            )
        currency = (currency or self.config.currency).lower()
        provider = self.providers.get(provider_name or self.config.default_provider)
        creator_id_ctx.set(creator_id)

        destination = None
        with self.session_factory() as db:
            creator = db.get(CreatorAccount, creator_id)
            if creator is None or not creator.can_monetize:
                raise MonetizationNotEnabled(f"creator {creator_id} cannot receive payments")
            if provider.capabilities.supports_direct_transfer and kind != "stars_purchase":
                account = find_provider_account(db, creator_id, provider.name)
                if account is not None and account.status == "active" and account.external_account_id:
                    destination = account.external_account_id

        fee_cents = compute_fee(amount_cents, self.config.fee_rate, self.config.fixed_fee_cents)
        net_cents = amount_cents - fee_cents
        routing = "direct_transfer" if destination is not None else "platform_held"
        transaction_id = str(uuid4())
        intent = provider.create_charge_intent(
            amount_cents=amount_cents,
            currency=currency,
            fee_cents=fee_cents if destination is not None else None,
            destination_account_id=destination,
            metadata={
                "transaction_id": transaction_id,
                "creator_id": creator_id,
                "payer_id": payer_id,
                "kind": kind,
                "routing": routing,
            },
            description=description or f"{kind} for {creator_id}",
        )

        def work(db) -> None:
            db.add(
                Transaction(
                    transaction_id=transaction_id,
                    creator_id=creator_id,
                    payer_id=payer_id,
                    kind=kind,
                    provider=provider.name,
                    routing=routing,
                    amount_cents=amount_cents,
                    fee_cents=fee_cents,
                    net_cents=net_cents,
                    currency=currency,
                    status="pending",
                    provider_reference=intent.reference,
                    description=description,
                )
            )

        unit_of_work(
            self.session_factory,
            work,
            attempts=self.config.storage_retry_attempts,
            service_name=self.service_name,
        )
        charges_created_total.labels(
            service=self.service_name, provider=provider.name, kind=kind, routing=routing
        ).inc()
        logger.info(
            "charge created transaction_id=%s provider=%s reference=%s kind=%s routing=%s amount=%s fee=%s",
            transaction_id,
            provider.name,
            intent.reference,
            kind,
            routing,
            amount_cents,
            fee_cents,
        )
        return ChargeResponse(
            client_token=intent.client_token,
            transaction_id=transaction_id,
            provider=provider.name,
            routing=routing,
            amount_cents=amount_cents,
            fee_cents=fee_cents,
            net_cents=net_cents,
        )

    def capture_charge(self, transaction_id: str) -> TransactionResponse:
        """Capture an approved order for providers that need a server-side capture.

        Balances are untouched here; completion still arrives by webhook.
        """

        with self.session_factory() as db:
            tx = db.get(Transaction, transaction_id)
            if tx is None:
                raise NotFound(f"transaction {transaction_id} not found")
        provider = self.providers.get(tx.provider)
        if tx.status != "pending" or not provider.capabilities.requires_capture:
            return to_transaction_response(tx)

        capture_id = provider.capture(tx.provider_reference)

        def work(db) -> Transaction:
            row = db.execute(
                select(Transaction).where(Transaction.transaction_id == transaction_id).with_for_update()
            ).scalar_one()
            if capture_id and row.provider_capture_id is None:
                row.provider_capture_id = capture_id
            return row

        row = unit_of_work(
            self.session_factory,
            work,
            attempts=self.config.storage_retry_attempts,
            service_name=self.service_name,
        )
        logger.info("charge captured transaction_id=%s capture_id=%s", transaction_id, capture_id)
        return to_transaction_response(row)

    def get_transaction(self, transaction_id: str) -> TransactionResponse:
        with self.session_factory() as db:
            tx = db.get(Transaction, transaction_id)
            if tx is None:
                raise NotFound(f"transaction {transaction_id} not found")
            return to_transaction_response(tx)

    def list_transactions(self, creator_id: str, limit: int = 50, offset: int = 0) -> list[TransactionResponse]:
        with self.session_factory() as db:
            rows = db.execute(
                select(Transaction)
                .where(Transaction.creator_id == creator_id)
                .order_by(Transaction.created_at.desc(), Transaction.transaction_id)
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            return [to_transaction_response(tx) for tx in rows]
