"""Monetization service process entrypoint.

Wires providers and ledger components from `settings`, starts the outbox
publisher and serves the HTTP app.
"""

import asyncio
from contextlib import asynccontextmanager

import redis
from fastapi import FastAPI

from creatorpay.common.config import MonetizationConfig, settings
from creatorpay.common.db import SessionLocal
from creatorpay.common.events import KafkaBus
from creatorpay.common.logging import configure_logging, logger
from creatorpay.common.outbox import OutboxPublisher
from creatorpay.common.startup import log_startup_config
from creatorpay.common.tracing import instrument_app, setup_tracing
from creatorpay.services.monetization.accounts import AccountLinker
from creatorpay.services.monetization.api import MonetizationComponents, build_app
from creatorpay.services.monetization.charges import ChargeInitiator
from creatorpay.services.monetization.ledger import BalanceLedger
from creatorpay.services.monetization.models import OutboxEvent
from creatorpay.services.monetization.payouts import PayoutProcessor
from creatorpay.services.monetization.paypal_provider import PayPalProvider
from creatorpay.services.monetization.providers import ProviderRegistry
from creatorpay.services.monetization.reconciliation import ReconciliationEngine
from creatorpay.services.monetization.stripe_provider import StripeProvider

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings,
    [
        "postgres_dsn",
        "redis_url",
        "kafka_bootstrap_servers",
        "currency",
        "platform_fee_rate",
        "platform_fee_fixed_cents",
        "min_payout_cents",
        "payout_call_attempts",
        "stars_per_unit",
        "default_charge_provider",
        "stripe_secret_key",
        "paypal_client_id",
        "paypal_environment",
    ],
)


def build_providers() -> ProviderRegistry:
    """Register every provider whose credentials are configured."""

    providers = []
    if settings.stripe_secret_key:
        providers.append(
            StripeProvider(
                api_key=settings.stripe_secret_key,
                webhook_secret=settings.stripe_webhook_secret,
                refresh_url=settings.onboarding_refresh_url,
                return_url=settings.onboarding_return_url,
                timeout_seconds=settings.provider_timeout_seconds,
                service_name=settings.service_name,
            )
        )
    else:
        logger.warning("stripe disabled: STRIPE_SECRET_KEY is not set")
    if settings.paypal_client_id:
        providers.append(
            PayPalProvider(
                client_id=settings.paypal_client_id,
                client_secret=settings.paypal_client_secret,
                webhook_id=settings.paypal_webhook_id,
                environment=settings.paypal_environment,
                timeout_seconds=settings.provider_timeout_seconds,
                service_name=settings.service_name,
            )
        )
    else:
        logger.warning("paypal disabled: PAYPAL_CLIENT_ID is not set")
    return ProviderRegistry(providers)


config = MonetizationConfig.from_settings(settings)
registry = build_providers()
ledger = BalanceLedger(SessionLocal, currency=config.currency, service_name=settings.service_name)
accounts = AccountLinker(SessionLocal, registry, config, service_name=settings.service_name)
components = MonetizationComponents(
    accounts=accounts,
    charges=ChargeInitiator(SessionLocal, registry, config, service_name=settings.service_name),
    webhooks=ReconciliationEngine(
        SessionLocal, registry, ledger, accounts, config, service_name=settings.service_name
    ),
    ledger=ledger,
    payouts=PayoutProcessor(SessionLocal, registry, ledger, config, service_name=settings.service_name),
)
kafka = KafkaBus(settings.kafka_bootstrap_servers)
publisher = OutboxPublisher(SessionLocal, OutboxEvent, kafka, settings.service_name)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Start the outbox publisher loop for the life of the app."""

    publisher_task = asyncio.create_task(publisher.run_forever())
    yield
    publisher_task.cancel()
    await kafka.close()


app = build_app(
    components,
    api_key=settings.api_key,
    cache=redis.Redis.from_url(settings.redis_url, decode_responses=True),
    idempotency_ttl_seconds=settings.idempotency_ttl_seconds,
    service_name=settings.service_name,
    lifespan=lifespan,
)
instrument_app(app)
