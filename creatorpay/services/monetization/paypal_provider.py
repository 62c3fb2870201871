"""PayPal REST adapter: the held-funds provider.

Every charge settles to the platform's own PayPal account; creators are paid
later through Payouts batches.
"""

import json
import time
from typing import Any, Mapping

import httpx

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
    format_minor_units,
)

SANDBOX_URL = "https://api-m.sandbox.paypal.com"
LIVE_URL = "https://api-m.paypal.com"

EVENT_KINDS: dict[str, EventKind] = {
    "PAYMENT.CAPTURE.COMPLETED": EventKind.CHARGE_COMPLETED,
    "PAYMENT.CAPTURE.DENIED": EventKind.CHARGE_FAILED,
    "PAYMENT.CAPTURE.REFUNDED": EventKind.CHARGE_FAILED,
    "PAYOUTS.PAYOUT.COMPLETED": EventKind.PAYOUT_COMPLETED,
    "PAYOUTS.PAYOUT.DENIED": EventKind.PAYOUT_FAILED,
    "PAYOUTS.PAYOUT.FAILED": EventKind.PAYOUT_FAILED,
    "MERCHANT.ONBOARDING.COMPLETED": EventKind.ACCOUNT_UPDATED,
}

SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class PayPalProvider:
    name = "paypal"
    capabilities = ProviderCapabilities(supports_direct_transfer=False, requires_capture=True)

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: str,
        environment: str = "sandbox",
        timeout_seconds: float = 8.0,
        transport: httpx.BaseTransport | None = None,
        service_name: str = "monetization",
    ) -> None:
        self.client_id = client_id.strip()
        self.client_secret = client_secret.strip()
        self.webhook_id = webhook_id
        self.base_url = LIVE_URL if environment == "production" else SANDBOX_URL
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.service_name = service_name
        self._token: str | None = None
        self._token_expires_at = 0.0

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout_seconds, transport=self.transport)

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        if not self.client_id or not self.client_secret:
            raise ProviderUnavailable("paypal credentials are not configured")
        try:
            payload = self._send(
                "oauth_token",
                "POST",
                "/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
        except ProviderRejected as exc:
            raise ProviderUnavailable("paypal rejected the platform credentials") from exc
        self._token = payload["access_token"]
        # Refresh a minute early so a token never expires mid-request.
        self._token_expires_at = time.monotonic() + max(0, int(payload.get("expires_in", 0)) - 60)
        return self._token

    def _send(self, operation: str, method: str, path: str, **kwargs) -> dict[str, Any]:
        start = time.perf_counter()
        try:
            with self._client() as client:
                resp = client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("paypal timeout operation=%s error=%s", operation, exc)
            raise TransientProviderError(f"paypal {operation} timed out") from exc
        except httpx.TransportError as exc:
            logger.warning("paypal transport failure operation=%s error=%s", operation, exc)
            raise TransientProviderError(f"paypal {operation} failed: {exc}") from exc
        finally:
            provider_call_seconds.labels(
                service=self.service_name, provider=self.name, operation=operation
            ).observe(max(0.0, time.perf_counter() - start))
        if resp.status_code >= 500 or resp.status_code == 429:
            raise ProviderUnavailable(f"paypal {operation} failed (status={resp.status_code})")
        if resp.status_code >= 400:
            logger.warning("paypal rejected operation=%s status=%s body=%s", operation, resp.status_code, resp.text)
            raise ProviderRejected(f"paypal {operation} rejected (status={resp.status_code})")
        try:
            return resp.json()
        except ValueError as exc:
            # A 2xx we cannot read may still have been applied.
            logger.warning("paypal unreadable response operation=%s status=%s", operation, resp.status_code)
            raise ProviderUnavailable(f"paypal {operation} returned an unreadable body") from exc

    def _authorized(self, operation: str, method: str, path: str, **kwargs) -> dict[str, Any]:
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {self._access_token()}"
        return self._send(operation, method, path, headers=headers, **kwargs)

    def parse_webhook(self, body: bytes, headers: Mapping[str, str]) -> ProviderEvent:
        signature_fields = {}
        for field_name, header in SIGNATURE_HEADERS.items():
            value = headers.get(header)
            if not value:
                raise InvalidSignature(f"missing {header} header")
            signature_fields[field_name] = value
        try:
            event = json.loads(body)
        except ValueError as exc:
            raise InvalidSignature("webhook body is not valid JSON") from exc

        try:
            verification = self._authorized(
                "verify_webhook_signature",
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json={**signature_fields, "webhook_id": self.webhook_id, "webhook_event": event},
            )
        except ProviderRejected as exc:
            raise InvalidSignature(f"paypal rejected signature verification: {exc}") from exc
        if verification.get("verification_status") != "SUCCESS":
            raise InvalidSignature("paypal signature verification failed")

        event_type = event.get("event_type", "")
        resource = event.get("resource") or {}
        kind = EVENT_KINDS.get(event_type, EventKind.UNKNOWN)
        common = {
            "provider": self.name,
            "event_id": event.get("id"),
            "event_type": event_type,
            "kind": kind,
            "payload": event,
        }
        if kind in (EventKind.CHARGE_COMPLETED, EventKind.CHARGE_FAILED):
            order_id = ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
            reason = None
            if kind is EventKind.CHARGE_FAILED:
                reason = (resource.get("status_details") or {}).get("reason") or event_type
            return ProviderEvent(reference=order_id, capture_id=resource.get("id"), failure_reason=reason, **common)
        if kind in (EventKind.PAYOUT_COMPLETED, EventKind.PAYOUT_FAILED):
            batch_header = resource.get("batch_header") or {}
            batch_id = batch_header.get("payout_batch_id")
            sender_batch_id = (batch_header.get("sender_batch_header") or {}).get("sender_batch_id")
            reason = None
            if kind is EventKind.PAYOUT_FAILED:
                reason = resource.get("reason") or "payout failed"
            return ProviderEvent(reference=batch_id, payout_id=sender_batch_id, failure_reason=reason, **common)
        if kind is EventKind.ACCOUNT_UPDATED:
            return ProviderEvent(
                reference=resource.get("merchant_id"),
                account_id=resource.get("merchant_id"),
                creator_id=resource.get("tracking_id"),
                account_active=True,
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
        order = self._authorized(
            "create_order",
            "POST",
            "/v2/checkout/orders",
            headers={"PayPal-Request-Id": f"charge-{metadata['transaction_id']}", "Prefer": "return=minimal"},
            json={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "amount": {"currency_code": currency.upper(), "value": format_minor_units(amount_cents)},
                        "description": description[:127],
                        "custom_id": metadata["transaction_id"],
                    }
                ],
            },
        )
        return ChargeIntent(reference=order["id"], client_token=order["id"])

    def capture(self, reference: str) -> str | None:
        result = self._authorized(
            "capture_order",
            "POST",
            f"/v2/checkout/orders/{reference}/capture",
            headers={"PayPal-Request-Id": f"capture-{reference}"},
            json={},
        )
        for unit in result.get("purchase_units", []):
            for capture in (unit.get("payments") or {}).get("captures", []):
                return capture.get("id")
        return None

    def create_payout(
        self, *, payout_id: str, amount_cents: int, currency: str, destination_account_id: str
    ) -> str:
        recipient_type = "EMAIL" if "@" in destination_account_id else "PAYPAL_ID"
        batch = self._authorized(
            "create_payout",
            "POST",
            "/v1/payments/payouts",
            headers={"PayPal-Request-Id": f"payout-{payout_id}"},
            json={
                "sender_batch_header": {
                    "sender_batch_id": payout_id,
                    "email_subject": "You have a payout",
                },
                "items": [
                    {
                        "recipient_type": recipient_type,
                        "amount": {"value": format_minor_units(amount_cents), "currency": currency.upper()},
                        "receiver": destination_account_id,
                        "sender_item_id": payout_id,
                    }
                ],
            },
        )
        batch_id = (batch.get("batch_header") or {}).get("payout_batch_id")
        if not batch_id:
            raise ProviderUnavailable(f"paypal create_payout returned no batch id for payout {payout_id}")
        return batch_id
