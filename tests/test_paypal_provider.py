"""PayPal adapter against a mocked REST API."""

import json

import httpx
import pytest

from creatorpay.common.errors import (
    InvalidSignature,
    ProviderRejected,
    ProviderUnavailable,
    TransientProviderError,
)
from creatorpay.services.monetization.paypal_provider import PayPalProvider
from creatorpay.services.monetization.providers import EventKind

SIGNATURE_HEADERS = {
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-cert-url": "https://api.paypal.com/cert.pem",
    "paypal-transmission-id": "tx-id",
    "paypal-transmission-sig": "sig",
    "paypal-transmission-time": "2026-10-19T00:00:00Z",
}


class FakePayPal:
    """Route table for `httpx.MockTransport`; records every request."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.verification_status = "SUCCESS"
        self.overrides: dict[str, httpx.Response] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.overrides:
            return self.overrides[path]
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "token-1", "expires_in": 3600})
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": self.verification_status})
        if path == "/v2/checkout/orders":
            return httpx.Response(201, json={"id": "ORDER-1", "status": "CREATED"})
        if path == "/v2/checkout/orders/ORDER-1/capture":
            return httpx.Response(
                201, json={"id": "ORDER-1", "purchase_units": [{"payments": {"captures": [{"id": "CAP-1"}]}}]}
            )
        if path == "/v1/payments/payouts":
            return httpx.Response(201, json={"batch_header": {"payout_batch_id": "BATCH-1"}})
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


@pytest.fixture
def api():
    return FakePayPal()


@pytest.fixture
def provider(api):
    return PayPalProvider("client-id", "client-secret", "WH-1", transport=httpx.MockTransport(api))


def webhook(event_type: str, resource: dict) -> bytes:
    return json.dumps({"id": "WH-EVT-1", "event_type": event_type, "resource": resource}).encode()


class TestParseWebhook:
    def test_capture_completed_maps_to_order(self, provider, api):
        body = webhook(
            "PAYMENT.CAPTURE.COMPLETED",
            {"id": "CAP-1", "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}}},
        )

        parsed = provider.parse_webhook(body, SIGNATURE_HEADERS)

        assert parsed.kind is EventKind.CHARGE_COMPLETED
        assert parsed.reference == "ORDER-1"
        assert parsed.capture_id == "CAP-1"
        verify = json.loads(api.requests[-1].content)
        assert verify["webhook_id"] == "WH-1"
        assert verify["transmission_sig"] == "sig"
        assert verify["webhook_event"]["id"] == "WH-EVT-1"

    def test_payout_failure_maps_to_batch(self, provider):
        body = webhook(
            "PAYOUTS.PAYOUT.FAILED",
            {"batch_header": {"payout_batch_id": "BATCH-1"}, "reason": "RECEIVER_UNREGISTERED"},
        )

        parsed = provider.parse_webhook(body, SIGNATURE_HEADERS)

        assert parsed.kind is EventKind.PAYOUT_FAILED
        assert parsed.reference == "BATCH-1"
        assert parsed.failure_reason == "RECEIVER_UNREGISTERED"

    def test_payout_carries_sender_batch_id(self, provider):
        body = webhook(
            "PAYOUTS.PAYOUT.COMPLETED",
            {"batch_header": {"payout_batch_id": "BATCH-1", "sender_batch_header": {"sender_batch_id": "po-1"}}},
        )

        parsed = provider.parse_webhook(body, SIGNATURE_HEADERS)

        assert parsed.kind is EventKind.PAYOUT_COMPLETED
        assert (parsed.reference, parsed.payout_id) == ("BATCH-1", "po-1")

    def test_onboarding_completed_carries_creator(self, provider):
        body = webhook("MERCHANT.ONBOARDING.COMPLETED", {"merchant_id": "M-1", "tracking_id": "creator-1"})

        parsed = provider.parse_webhook(body, SIGNATURE_HEADERS)

        assert parsed.kind is EventKind.ACCOUNT_UPDATED
        assert (parsed.account_id, parsed.creator_id, parsed.account_active) == ("M-1", "creator-1", True)

    def test_failed_verification_rejected(self, provider, api):
        api.verification_status = "FAILURE"
        with pytest.raises(InvalidSignature):
            provider.parse_webhook(webhook("PAYMENT.CAPTURE.COMPLETED", {}), SIGNATURE_HEADERS)

    def test_missing_headers_rejected_without_calling_paypal(self, provider, api):
        headers = dict(SIGNATURE_HEADERS)
        del headers["paypal-transmission-sig"]
        with pytest.raises(InvalidSignature):
            provider.parse_webhook(webhook("PAYMENT.CAPTURE.COMPLETED", {}), headers)
        assert api.requests == []

    def test_verification_outage_is_not_a_bad_signature(self, provider, api):
        api.overrides["/v1/notifications/verify-webhook-signature"] = httpx.Response(503)
        with pytest.raises(ProviderUnavailable):
            provider.parse_webhook(webhook("PAYMENT.CAPTURE.COMPLETED", {}), SIGNATURE_HEADERS)


class TestCalls:
    def test_order_capture_and_payout(self, provider, api):
        intent = provider.create_charge_intent(
            amount_cents=1000,
            currency="usd",
            fee_cents=None,
            destination_account_id=None,
            metadata={"transaction_id": "tx-1"},
            description="tip",
        )
        assert (intent.reference, intent.client_token) == ("ORDER-1", "ORDER-1")
        order = json.loads(api.requests[-1].content)
        assert order["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "10.00"}
        assert api.requests[-1].headers["PayPal-Request-Id"] == "charge-tx-1"

        assert provider.capture("ORDER-1") == "CAP-1"

        batch_id = provider.create_payout(
            payout_id="po-1", amount_cents=970, currency="usd", destination_account_id="creator@example.com"
        )
        assert batch_id == "BATCH-1"
        payout = json.loads(api.requests[-1].content)
        assert payout["sender_batch_header"]["sender_batch_id"] == "po-1"
        assert payout["items"][0]["recipient_type"] == "EMAIL"
        assert payout["items"][0]["amount"] == {"value": "9.70", "currency": "USD"}

        # One token fetch serves every call.
        assert api.paths().count("/v1/oauth2/token") == 1

    def test_client_error_is_rejection(self, provider, api):
        api.overrides["/v1/payments/payouts"] = httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY"})
        with pytest.raises(ProviderRejected):
            provider.create_payout(payout_id="po-1", amount_cents=970, currency="usd", destination_account_id="M-1")

    def test_timeout_is_transient(self):
        def timeout(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        provider = PayPalProvider("client-id", "client-secret", "WH-1", transport=httpx.MockTransport(timeout))
        with pytest.raises(TransientProviderError):
            provider.capture("ORDER-1")

    def test_missing_credentials(self):
        provider = PayPalProvider("", "", "WH-1", transport=httpx.MockTransport(FakePayPal()))
        with pytest.raises(ProviderUnavailable):
            provider.capture("ORDER-1")

    def test_unreadable_success_body_is_unavailable(self, provider, api):
        api.overrides["/v1/payments/payouts"] = httpx.Response(201, content=b"<html>accepted</html>")
        with pytest.raises(ProviderUnavailable):
            provider.create_payout(payout_id="po-1", amount_cents=970, currency="usd", destination_account_id="M-1")

    def test_payout_without_batch_id_is_unavailable(self, provider, api):
        api.overrides["/v1/payments/payouts"] = httpx.Response(201, json={"links": []})
        with pytest.raises(ProviderUnavailable):
            provider.create_payout(payout_id="po-1", amount_cents=970, currency="usd", destination_account_id="M-1")
