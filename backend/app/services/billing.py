"""Application wiring for webhook processing and token reconciliation."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..billing import (
    BillingConfig,
    LocalSandboxPaymentProvider,
    PaymentProvider,
    ReconciliationSweeper,
    StripePaymentProvider,
    TokenLedger,
    WebhookProcessor,
    load_billing_config,
)
from ..billing.repository import (
    PostgresSubscriptionRepository,
    PostgresTokenLedgerRepository,
    PostgresWebhookEventRepository,
)


logger = logging.getLogger("billing")


@lru_cache(maxsize=1)
def get_billing_config() -> BillingConfig:
    return load_billing_config()


@lru_cache(maxsize=1)
def get_payment_provider() -> PaymentProvider:
    config = get_billing_config()
    if not config.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set; using the local sandbox payment provider")
        return LocalSandboxPaymentProvider()
    return StripePaymentProvider(
        config.stripe_secret_key,
        timeout_seconds=config.provider_timeout_seconds,
    )


@lru_cache(maxsize=1)
def get_token_ledger() -> TokenLedger:
    return TokenLedger(PostgresTokenLedgerRepository())


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookProcessor:
    config = get_billing_config()
    if not config.webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; every webhook will be rejected")
    return WebhookProcessor(
        events=PostgresWebhookEventRepository(),
        subscriptions=PostgresSubscriptionRepository(),
        ledger=get_token_ledger(),
        provider=get_payment_provider(),
        webhook_secret=config.webhook_secret,
        signature_tolerance_seconds=config.signature_tolerance_seconds,
    )


@lru_cache(maxsize=1)
def get_reconciliation_sweeper() -> ReconciliationSweeper:
    return ReconciliationSweeper(
        subscriptions=PostgresSubscriptionRepository(),
        ledger=get_token_ledger(),
    )


__all__ = [
    "get_billing_config",
    "get_payment_provider",
    "get_reconciliation_sweeper",
    "get_token_ledger",
    "get_webhook_processor",
]
