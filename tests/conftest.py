"""Shared fixtures: an in-memory SQLite ledger and fake payment providers."""

import json
import os

os.environ.setdefault("POSTGRES_DSN", "sqlite://")
os.environ.setdefault("API_KEY", "test-key")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from creatorpay.common.config import MonetizationConfig
from creatorpay.common.db import Base
from creatorpay.common.errors import InvalidSignature, TransientProviderError
from creatorpay.services.monetization.accounts import AccountLinker
from creatorpay.services.monetization.charges import ChargeInitiator
from creatorpay.services.monetization.ledger import BalanceLedger
from creatorpay.services.monetization.payouts import PayoutProcessor
from creatorpay.services.monetization.providers import (
    ChargeIntent,
    EventKind,
    ProviderCapabilities,
    ProviderEvent,
    ProviderRegistry,
    RemoteAccount,
)
from creatorpay.services.monetization.reconciliation import ReconciliationEngine

SIGNATURE_HEADER = "x-fake-signature"


class FakeProvider:
    """In-memory provider implementing the payment and account protocols."""

    def __init__(self, name: str, supports_direct_transfer: bool, requires_capture: bool = False) -> None:
        self.name = name
        self.capabilities = ProviderCapabilities(
            supports_direct_transfer=supports_direct_transfer, requires_capture=requires_capture
        )
        self.intents: list[dict] = []
        self.payouts: list[dict] = []
        self.payout_calls: list[str] = []
        self.captures: list[str] = []
        self.created_accounts: list[str] = []
        self.active_accounts: set[str] = set()
        self.payout_error: Exception | None = None
        # Raised once each, in order, before the payout is accepted.
        self.payout_errors: list[Exception] = []
        # Accept the payout, then lose the answer this many times.
        self.payout_timeouts = 0
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self.name}_{self._seq}"

    def parse_webhook(self, body: bytes, headers) -> ProviderEvent:
        if headers.get(SIGNATURE_HEADER) != "valid":
            raise InvalidSignature("fake signature mismatch")
        data = json.loads(body)
        return ProviderEvent(
            provider=self.name,
            event_id=data.get("id"),
            event_type=data.get("type", "unknown"),
            kind=EventKind(data.get("kind", "unknown")),
            reference=data.get("reference"),
            capture_id=data.get("capture_id"),
            payout_id=data.get("payout_id"),
            account_id=data.get("account_id"),
            creator_id=data.get("creator_id"),
            account_active=data.get("account_active"),
            failure_reason=data.get("failure_reason"),
            payload=data,
        )

    def create_charge_intent(
        self, *, amount_cents, currency, fee_cents, destination_account_id, metadata, description
    ) -> ChargeIntent:
        reference = self._next("ref")
        self.intents.append(
            {
                "reference": reference,
                "amount_cents": amount_cents,
                "currency": currency,
                "fee_cents": fee_cents,
                "destination": destination_account_id,
                "metadata": metadata,
            }
        )
        return ChargeIntent(reference=reference, client_token=f"{reference}_secret")

    def capture(self, reference: str) -> str | None:
        self.captures.append(reference)
        return f"cap_{reference}"

    def create_payout(self, *, payout_id, amount_cents, currency, destination_account_id) -> str:
        self.payout_calls.append(payout_id)
        if self.payout_error is not None:
            raise self.payout_error
        if self.payout_errors:
            raise self.payout_errors.pop(0)
        existing = next((p for p in self.payouts if p["payout_id"] == payout_id), None)
        if existing is None:
            existing = {
                "payout_id": payout_id,
                "reference": self._next("po"),
                "amount_cents": amount_cents,
                "destination": destination_account_id,
            }
            self.payouts.append(existing)
        if self.payout_timeouts > 0:
            self.payout_timeouts -= 1
            raise TransientProviderError(f"{self.name} payout timed out")
        return existing["reference"]

    def create_account(self, creator_id: str) -> str:
        account_id = f"acct_{creator_id}"
        self.created_accounts.append(account_id)
        return account_id

    def retrieve_account(self, account_id: str) -> RemoteAccount:
        active = account_id in self.active_accounts
        return RemoteAccount(account_id=account_id, charges_enabled=active, payouts_enabled=active)

    def onboarding_url(self, account_id: str) -> str:
        return f"https://{self.name}.test/onboard/{account_id}"

    def dashboard_url(self, account_id: str) -> str:
        return f"https://{self.name}.test/dashboard/{account_id}"


def webhook_body(kind: str, reference: str | None = None, **fields) -> bytes:
    payload = {"id": fields.pop("id", f"evt_{kind}_{reference}"), "type": kind, "kind": kind, "reference": reference}
    payload.update(fields)
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)

    # pysqlite needs explicit BEGIN for SAVEPOINT to behave.
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def config():
    # Flat 0.30 fee so a 10.00 tip nets exactly 9.70.
    return MonetizationConfig(
        fee_rate=Decimal("0"),
        fixed_fee_cents=30,
        min_charge_cents=100,
        min_payout_cents=100,
        stars_per_unit=Decimal("100"),
        storage_retry_attempts=2,
        payout_call_attempts=3,
        payout_retry_backoff_seconds=0,
    )


@pytest.fixture
def stripe_fake():
    return FakeProvider("stripe", supports_direct_transfer=True)


@pytest.fixture
def paypal_fake():
    return FakeProvider("paypal", supports_direct_transfer=False, requires_capture=True)


@pytest.fixture
def registry(stripe_fake, paypal_fake):
    return ProviderRegistry([stripe_fake, paypal_fake])


@pytest.fixture
def ledger(session_factory, config):
    return BalanceLedger(session_factory, currency=config.currency)


@pytest.fixture
def accounts(session_factory, registry, config):
    return AccountLinker(session_factory, registry, config)


@pytest.fixture
def charges(session_factory, registry, config):
    return ChargeInitiator(session_factory, registry, config)


@pytest.fixture
def reconciler(session_factory, registry, ledger, accounts, config):
    return ReconciliationEngine(session_factory, registry, ledger, accounts, config)


@pytest.fixture
def payouts(session_factory, registry, ledger, config):
    return PayoutProcessor(session_factory, registry, ledger, config)


@pytest.fixture
def deliver(reconciler):
    """Send a correctly signed fake webhook through the reconciliation engine."""

    def _deliver(provider: str, kind: str, reference: str | None = None, **fields):
        body = webhook_body(kind, reference, **fields)
        return reconciler.handle_webhook(provider, body, {SIGNATURE_HEADER: "valid"})

    return _deliver


@pytest.fixture
def creator(accounts):
    accounts.set_can_monetize("creator-1", True)
    return "creator-1"


@pytest.fixture
def paypal_creator(creator, accounts, deliver):
    """Monetized creator whose held-funds account finished onboarding."""

    accounts.link_account(creator, "paypal")
    deliver(
        "paypal",
        "account_updated",
        "merchant-1",
        account_id="merchant-1",
        creator_id=creator,
        account_active=True,
    )
    return creator


@pytest.fixture
def stripe_creator(creator, accounts, stripe_fake):
    """Monetized creator with an active direct-transfer account."""

    stripe_fake.active_accounts.add(f"acct_{creator}")
    accounts.link_account(creator, "stripe")
    return creator
