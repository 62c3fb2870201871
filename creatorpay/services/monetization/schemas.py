"""API request/response schemas for monetization endpoints."""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

ChargeKind = Literal["tip", "stars_purchase", "subscription"]
ProviderName = Literal["stripe", "paypal"]
AccountStatus = Literal["none", "pending", "active"]


class CheckoutRequest(BaseModel):
    """Payload sent by the checkout collaborator to open a charge."""

    payer_id: str = Field(min_length=1)
    creator_id: str = Field(min_length=1)
    kind: ChargeKind
    amount_cents: int = Field(gt=0)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    provider: ProviderName | None = None
    description: str | None = Field(default=None, max_length=500)


class ChargeResponse(BaseModel):
    client_token: str
    transaction_id: str
    provider: str
    routing: str
    amount_cents: int
    fee_cents: int
    net_cents: int


class TransactionResponse(BaseModel):
    transaction_id: str
    creator_id: str
    payer_id: str
    kind: str
    provider: str
    routing: str
    status: str
    amount_cents: int
    fee_cents: int
    net_cents: int
    currency: str
    stars_amount: Decimal | None = None


class BalanceResponse(BaseModel):
    creator_id: str
    available_cents: int
    pending_cents: int
    total_earned_cents: int
    currency: str


class StarsBalanceResponse(BaseModel):
    creator_id: str
    stars: Decimal


class ProviderAccountStatus(BaseModel):
    provider: str
    status: AccountStatus
    external_account_id: str | None = None


class AccountStatusResponse(BaseModel):
    creator_id: str
    can_monetize: bool
    accounts: list[ProviderAccountStatus]


class LinkResponse(BaseModel):
    url: str
    status: AccountStatus


class MonetizationFlagRequest(BaseModel):
    can_monetize: bool


class PayoutResponse(BaseModel):
    payout_id: str
    creator_id: str
    provider: str
    amount_cents: int
    currency: str
    status: str
    provider_reference: str | None = None
    failure_reason: str | None = None


class EarningsResponse(BaseModel):
    balance: BalanceResponse
    transactions: list[TransactionResponse]


class WebhookResponse(BaseModel):
    received: bool = True
    outcome: str


class ReconciliationResponse(BaseModel):
    """Conservation check for one creator's platform-held money."""

    creator_id: str
    balanced: bool
    expected_cents: int
    actual_cents: int
    completed_net_cents: int
    completed_payout_cents: int
    available_cents: int
    pending_cents: int
