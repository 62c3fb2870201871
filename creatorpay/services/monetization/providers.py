"""Provider abstraction shared by the charge, payout, account and webhook paths.

Components consult `ProviderCapabilities` instead of branching on a provider's
name; provider quirks stay inside the adapter modules.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol

from creatorpay.common.errors import NotFound


class EventKind(str, Enum):
    CHARGE_COMPLETED = "charge_completed"
    CHARGE_FAILED = "charge_failed"
    PAYOUT_COMPLETED = "payout_completed"
    PAYOUT_FAILED = "payout_failed"
    ACCOUNT_UPDATED = "account_updated"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ProviderCapabilities:
    supports_direct_transfer: bool
    requires_capture: bool = False


@dataclass(frozen=True)
class ProviderEvent:
    """A verified provider notification normalised to ledger terms."""

    provider: str
    event_id: str | None
    event_type: str
    kind: EventKind
    reference: str | None = None
    capture_id: str | None = None
    payout_id: str | None = None
    account_id: str | None = None
    creator_id: str | None = None
    account_active: bool | None = None
    failure_reason: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChargeIntent:
    reference: str
    client_token: str


@dataclass(frozen=True)
class RemoteAccount:
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool = False

    @property
    def active(self) -> bool:
        return self.charges_enabled and self.payouts_enabled


class PaymentProvider(Protocol):
    """Charge, payout and webhook surface every provider implements."""

    name: str
    capabilities: ProviderCapabilities

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        """Authenticate then normalise; raises `InvalidSignature` before reading business fields."""
        ...

    def create_charge_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        fee_cents: int | None,
        destination_account_id: str | None,
        metadata: dict[str, str],
        description: str,
    ) -> ChargeIntent: ...

    def capture(self, reference: str) -> str | None: ...

    def create_payout(
        self, *, payout_id: str, amount_cents: int, currency: str, destination_account_id: str
    ) -> str: ...


class ConnectedAccountProvider(Protocol):
    """Remote account management, only for direct-transfer providers."""

    name: str

    def create_account(self, creator_id: str) -> str: ...

    def retrieve_account(self, account_id: str) -> RemoteAccount: ...

    def onboarding_url(self, account_id: str) -> str: ...

    def dashboard_url(self, account_id: str) -> str: ...


class ProviderRegistry:
    """Name-indexed set of configured providers."""

    def __init__(self, providers: list[PaymentProvider]) -> None:
        self._providers = {provider.name: provider for provider in providers}

    def get(self, name: str) -> PaymentProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise NotFound(f"unknown payment provider {name}")
        return provider

    def names(self) -> list[str]:
        return list(self._providers)

    def payout_candidates(self) -> list[PaymentProvider]:
        """Direct-transfer providers first, then held-funds providers."""

        return sorted(
            self._providers.values(),
            key=lambda provider: not provider.capabilities.supports_direct_transfer,
        )


def format_minor_units(amount_cents: int) -> str:
    """Render cents as a decimal string, e.g. 970 -> "9.70"."""

    sign = "-" if amount_cents < 0 else ""
    amount_cents = abs(amount_cents)
    return f"{sign}{amount_cents // 100}.{amount_cents % 100:02d}"
