"""HTTP surface of the monetization ledger.

Checkout, account linking and payout requests are API-key protected and come
from first-party collaborators. Webhooks authenticate with the provider's own
signature scheme instead.
"""

import json
from dataclasses import dataclass
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from creatorpay.common.errors import MonetizationError
from creatorpay.common.logging import creator_id_ctx, logger, trace_id_ctx
from creatorpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from creatorpay.services.monetization.accounts import AccountLinker
from creatorpay.services.monetization.charges import ChargeInitiator
from creatorpay.services.monetization.ledger import BalanceLedger
from creatorpay.services.monetization.payouts import PayoutProcessor
from creatorpay.services.monetization.reconciliation import ReconciliationEngine
from creatorpay.services.monetization.schemas import (
    AccountStatusResponse,
    BalanceResponse,
    ChargeResponse,
    CheckoutRequest,
    EarningsResponse,
    LinkResponse,
    MonetizationFlagRequest,
    PayoutResponse,
    ReconciliationResponse,
    StarsBalanceResponse,
    TransactionResponse,
    WebhookResponse,
)


@dataclass
class MonetizationComponents:
    """The wired ledger components one app instance serves."""

    accounts: AccountLinker
    charges: ChargeInitiator
    webhooks: ReconciliationEngine
    ledger: BalanceLedger
    payouts: PayoutProcessor


def enforce_api_key(expected: str, x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if not expected or x_api_key != expected:
        raise HTTPException(status_code=401, detail="invalid API key")


def _idempotency_cache_key(payer_id: str, idempotency_key: str) -> str:
    # Scoped by payer so two payers can never collide on a client-chosen key.
    return f"idempotency:checkout:{payer_id}:{idempotency_key}"


def build_app(
    components: MonetizationComponents,
    api_key: str,
    cache=None,
    idempotency_ttl_seconds: int = 86400,
    service_name: str = "monetization",
    lifespan=None,
) -> FastAPI:
    """Create the FastAPI app; `cache` is a Redis client for checkout idempotency."""

    app = FastAPI(title="Creator Monetization Ledger", lifespan=lifespan)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        trace_id_ctx.set(request.headers.get("x-correlation-id") or str(uuid4()))
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=service_name, route=route, method=method).observe(elapsed)
            http_requests_total.labels(
                service=service_name, route=route, method=method, status_code=str(status_code)
            ).inc()

    @app.exception_handler(MonetizationError)
    async def monetization_error_handler(request: Request, exc: MonetizationError):
        if exc.http_status >= 500 and not exc.retryable:
            logger.error("request failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
        headers = {"Retry-After": "5"} if exc.retryable else None
        return JSONResponse(
            status_code=exc.http_status,
            content={"error": {"code": exc.code, "message": exc.message}},
            headers=headers,
        )

    @app.post("/checkout", response_model=ChargeResponse)
    def checkout(
        req: CheckoutRequest,
        x_api_key: str | None = Header(default=None),
        idempotency_key: str | None = Header(default=None),
    ):
        """Open a charge; a repeated Idempotency-Key returns the first response."""

        enforce_api_key(api_key, x_api_key)
        cache_key = _idempotency_cache_key(req.payer_id, idempotency_key) if idempotency_key else None
        if cache is not None and cache_key:
            try:
                cached = cache.get(cache_key)
                if cached:
                    return json.loads(cached)
            except Exception as exc:
                logger.warning("idempotency_cache_read_failed: %s", exc)

        charge = components.charges.create_charge(
            payer_id=req.payer_id,
            creator_id=req.creator_id,
            kind=req.kind,
            amount_cents=req.amount_cents,
            currency=req.currency,
            provider_name=req.provider,
            description=req.description,
        )
        if cache is not None and cache_key:
            try:
                cache.setex(cache_key, idempotency_ttl_seconds, charge.model_dump_json())
            except Exception as exc:
                logger.warning("idempotency_cache_write_failed: %s", exc)
        return charge

    @app.post("/checkout/{transaction_id}/capture", response_model=TransactionResponse)
    def capture(transaction_id: str, x_api_key: str | None = Header(default=None)):
        enforce_api_key(api_key, x_api_key)
        return components.charges.capture_charge(transaction_id)

    @app.post("/webhooks/{provider}", response_model=WebhookResponse)
    async def webhook(provider: str, request: Request):
        """Provider notification endpoint; the raw body is needed for signature checks."""

        body = await request.body()
        headers = dict(request.headers)
        result = await run_in_threadpool(components.webhooks.handle_webhook, provider, body, headers)
        return WebhookResponse(outcome=result.outcome.value)

    @app.post("/accounts/{creator_id}/link/{provider}", response_model=LinkResponse)
    def link_account(creator_id: str, provider: str, x_api_key: str | None = Header(default=None)):
        enforce_api_key(api_key, x_api_key)
        creator_id_ctx.set(creator_id)
        return components.accounts.link_account(creator_id, provider)

    @app.get("/accounts/{creator_id}/status", response_model=AccountStatusResponse)
    def account_status(creator_id: str, refresh: bool = False, x_api_key: str | None = Header(default=None)):
        enforce_api_key(api_key, x_api_key)
        if refresh:
            for name in components.accounts.providers.names():
                components.accounts.get_status(creator_id, name, refresh=True)
        return components.accounts.get_account_status(creator_id)

    @app.put("/internal/creators/{creator_id}/monetization", response_model=AccountStatusResponse)
    def set_monetization(
        creator_id: str, req: MonetizationFlagRequest, x_api_key: str | None = Header(default=None)
    ):
        enforce_api_key(api_key, x_api_key)
        return components.accounts.set_can_monetize(creator_id, req.can_monetize)

    @app.post("/payouts/{creator_id}", response_model=PayoutResponse)
    def request_payout(creator_id: str, x_api_key: str | None = Header(default=None)):
        enforce_api_key(api_key, x_api_key)
        payout_id = components.payouts.request_payout(creator_id)
        return components.payouts.get_payout(payout_id)

    @app.get("/payouts/{creator_id}", response_model=list[PayoutResponse])
    def list_payouts(
        creator_id: str, limit: int = 50, offset: int = 0, x_api_key: str | None = Header(default=None)
    ):
        enforce_api_key(api_key, x_api_key)
        return components.payouts.list_payouts(creator_id, limit=limit, offset=offset)

    @app.get("/balances/{creator_id}", response_model=BalanceResponse)
    def balance(creator_id: str, x_api_key: str | None = Header(default=None)):
        enforce_api_key(api_key, x_api_key)
        return components.ledger.get_balance(creator_id)

    @app.get("/stars/{creator_id}", response_model=StarsBalanceResponse)
    def stars(creator_id: str, x_api_key: str | None = Header(default=None)):
        enforce_api_key(api_key, x_api_key)
        return components.webhooks.get_stars_balance(creator_id)

    @app.get("/earnings/{creator_id}", response_model=EarningsResponse)
    def earnings(creator_id: str, limit: int = 20, x_api_key: str | None = Header(default=None)):
        """Balance plus the most recent transactions, for the creator's earnings page."""

        enforce_api_key(api_key, x_api_key)
        return EarningsResponse(
            balance=components.ledger.get_balance(creator_id),
            transactions=components.charges.list_transactions(creator_id, limit=limit),
        )

    @app.get("/reconciliation/{creator_id}", response_model=ReconciliationResponse)
    def reconciliation(creator_id: str, x_api_key: str | None = Header(default=None)):
        """Conservation check of one creator's platform-held balance."""

        enforce_api_key(api_key, x_api_key)
        return components.webhooks.conservation_report(creator_id)

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    return app
