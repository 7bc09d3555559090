"""Billing domain package: webhook reconciliation, subscriptions, and the token ledger."""

from .config import BillingConfig, load_billing_config
from .events import ProviderEvent, ProviderEventKind, parse_provider_event
from .exceptions import (
    BillingError,
    ConcurrentModificationError,
    InvalidEventMetadataError,
    ProviderError,
    WebhookSignatureError,
)
from .ledger import TokenLedger, TokenLedgerRepository
from .models import (
    AdjustResult,
    ClaimResetResult,
    LedgerReason,
    PlanChange,
    PlanChangeKind,
    ReconciliationError,
    ReconciliationSummary,
    ResetResult,
    Subscription,
    TokenLedgerEntry,
    WebhookEventRecord,
    WebhookEventStatus,
)
from .provider import (
    LocalSandboxPaymentProvider,
    PaymentProvider,
    ProviderSubscription,
    StripePaymentProvider,
)
from .service import WebhookEventRepository, WebhookOutcome, WebhookProcessor
from .subscriptions import SubscriptionRepository
from .sweeper import ReconciliationSweeper

__all__ = [
    "AdjustResult",
    "BillingConfig",
    "BillingError",
    "ClaimResetResult",
    "ConcurrentModificationError",
    "InvalidEventMetadataError",
    "LedgerReason",
    "LocalSandboxPaymentProvider",
    "PaymentProvider",
    "PlanChange",
    "PlanChangeKind",
    "ProviderError",
    "ProviderEvent",
    "ProviderEventKind",
    "ProviderSubscription",
    "ReconciliationError",
    "ReconciliationSummary",
    "ReconciliationSweeper",
    "ResetResult",
    "StripePaymentProvider",
    "Subscription",
    "SubscriptionRepository",
    "TokenLedger",
    "TokenLedgerEntry",
    "TokenLedgerRepository",
    "WebhookEventRecord",
    "WebhookEventRepository",
    "WebhookEventStatus",
    "WebhookOutcome",
    "WebhookProcessor",
    "WebhookSignatureError",
    "load_billing_config",
    "parse_provider_event",
]
