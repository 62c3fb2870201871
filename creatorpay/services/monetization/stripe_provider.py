"""Stripe Connect adapter: the direct-transfer provider.

Charges to an active connected account use destination charges with an
application fee, so the creator's share never touches the platform balance.
"""

import json
import time
from typing import Mapping

import stripe

from creatorpay.common.errors import (
    InvalidSignature,
    ProviderRejected,
    ProviderUnavailable,
    TransientProviderError,
)
from creatorpay.common.logging import logger
from creatorpay.common.metrics import provider_call_seconds
from creatorpay.services.monetization.providers import (
    ChargeIntent,
    EventKind,
    ProviderCapabilities,
    ProviderEvent,
    RemoteAccount,
)

EVENT_KINDS: dict[str, EventKind] = {
    "payment_intent.succeeded": EventKind.CHARGE_COMPLETED,
    "payment_intent.payment_failed": EventKind.CHARGE_FAILED,
    "payment_intent.canceled": EventKind.CHARGE_FAILED,
    "charge.refunded": EventKind.CHARGE_FAILED,
    "transfer.created": EventKind.PAYOUT_COMPLETED,
    "transfer.reversed": EventKind.PAYOUT_FAILED,
    "account.updated": EventKind.ACCOUNT_UPDATED,
}


class StripeProvider:
    name = "stripe"
    capabilities = ProviderCapabilities(supports_direct_transfer=True)

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        refresh_url: str,
        return_url: str,
        timeout_seconds: float = 8.0,
        client: stripe.StripeClient | None = None,
        service_name: str = "monetization",
    ) -> None:
        self.webhook_secret = webhook_secret
        self.refresh_url = refresh_url
        self.return_url = return_url
        self.service_name = service_name
        self.client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout_seconds),
            max_network_retries=1,
        )

    def _call(self, operation: str, fn, *args, **kwargs):
        """Run one SDK call, translating Stripe errors into the ledger taxonomy."""

        start = time.perf_counter()
        try:
            return fn(*args, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.warning("stripe transient failure operation=%s error=%s", operation, exc)
            raise TransientProviderError(f"stripe {operation} failed: {exc}") from exc
        except stripe.APIError as exc:
            logger.warning("stripe api error operation=%s error=%s", operation, exc)
            raise ProviderUnavailable(f"stripe {operation} failed: {exc}") from exc
        except stripe.StripeError as exc:
            logger.warning("stripe rejected operation=%s error=%s", operation, exc)
            raise ProviderRejected(f"stripe {operation} rejected: {exc.user_message or exc}") from exc
        finally:
            provider_call_seconds.labels(
                service=self.service_name, provider=self.name, operation=operation
            ).observe(max(0.0, time.perf_counter() - start))

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        signature = headers.get("stripe-signature")
        if not signature:
            raise InvalidSignature("missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except (stripe.SignatureVerificationError, ValueError) as exc:
            raise InvalidSignature(f"stripe signature verification failed: {exc}") from exc

        event = json.loads(body)
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        kind = EVENT_KINDS.get(event_type, EventKind.UNKNOWN)
        common = {
            "provider": self.name,
            "event_id": event.get("id"),
            "event_type": event_type,
            "kind": kind,
            "payload": event,
        }
        if kind is EventKind.CHARGE_COMPLETED:
            return ProviderEvent(reference=obj.get("id"), capture_id=obj.get("latest_charge"), **common)
        if kind is EventKind.CHARGE_FAILED:
            if event_type == "charge.refunded":
                return ProviderEvent(
                    reference=obj.get("payment_intent"), capture_id=obj.get("id"), failure_reason="refunded", **common
                )
            error = obj.get("last_payment_error") or {}
            return ProviderEvent(
                reference=obj.get("id"),
                failure_reason=error.get("message") or obj.get("cancellation_reason") or event_type,
                **common,
            )
        if kind in (EventKind.PAYOUT_COMPLETED, EventKind.PAYOUT_FAILED):
            # Transfers carry our payout id so they match before the transfer id is saved.
            payout_id = (obj.get("metadata") or {}).get("payout_id")
            reason = "transfer reversed" if kind is EventKind.PAYOUT_FAILED else None
            return ProviderEvent(reference=obj.get("id"), payout_id=payout_id, failure_reason=reason, **common)
        if kind is EventKind.ACCOUNT_UPDATED:
            metadata = obj.get("metadata") or {}
            return ProviderEvent(
                reference=obj.get("id"),
                account_id=obj.get("id"),
                creator_id=metadata.get("creator_id"),
                account_active=bool(obj.get("charges_enabled")) and bool(obj.get("payouts_enabled")),
                **common,
            )
        return ProviderEvent(**common)

    def create_charge_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        fee_cents: int | None,
        destination_account_id: str | None,
        metadata: dict[str, str],
        description: str,
    ) -> ChargeIntent:
        params = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "metadata": metadata,
            "description": description,
            "automatic_payment_methods": {"enabled": True},
        }
        if destination_account_id is not None:
            params["application_fee_amount"] = fee_cents or 0
            params["transfer_data"] = {"destination": destination_account_id}
        intent = self._call(
            "create_payment_intent",
            self.client.payment_intents.create,
            params=params,
            options={"idempotency_key": f"charge:{metadata['transaction_id']}"},
        )
        return ChargeIntent(reference=intent.id, client_token=intent.client_secret)

    def capture(self, reference: str) -> str | None:
        # Payment intents confirm client-side with automatic capture.
        return None

    def create_payout(
        self, *, payout_id: str, amount_cents: int, currency: str, destination_account_id: str
    ) -> str:
        transfer = self._call(
            "create_transfer",
            self.client.transfers.create,
            params={
                "amount": amount_cents,
                "currency": currency.lower(),
                "destination": destination_account_id,
                "metadata": {"payout_id": payout_id, "type": "payout"},
            },
            options={"idempotency_key": f"payout:{payout_id}"},
        )
        return transfer.id

    def create_account(self, creator_id: str) -> str:
        account = self._call(
            "create_account",
            self.client.accounts.create,
            params={
                "type": "express",
                "capabilities": {
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
                "metadata": {"creator_id": creator_id},
            },
            options={"idempotency_key": f"account:{creator_id}"},
        )
        return account.id

    def retrieve_account(self, account_id: str) -> RemoteAccount:
        account = self._call("retrieve_account", self.client.accounts.retrieve, account_id)
        return RemoteAccount(
            account_id=account.id,
            charges_enabled=bool(account.charges_enabled),
            payouts_enabled=bool(account.payouts_enabled),
            details_submitted=bool(account.details_submitted),
        )

    def onboarding_url(self, account_id: str) -> str:
        link = self._call(
            "create_account_link",
            self.client.account_links.create,
            params={
                "account": account_id,
                "refresh_url": self.refresh_url,
                "return_url": self.return_url,
                "type": "account_onboarding",
            },
        )
        return link.url

    def dashboard_url(self, account_id: str) -> str:
        link = self._call("create_login_link", self.client.accounts.login_links.create, account_id)
        return link.url
