"""Domain models for subscriptions, the token ledger, and webhook bookkeeping."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..entitlements.models import BillingInterval, PlanKey, SubscriptionStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerReason(str, Enum):
    """Why a token balance changed."""

    PURCHASE = "purchase"
    GENERATION_SPEND = "generation_spend"
    PLAN_UPGRADE = "plan_upgrade"
    MONTHLY_RESET = "monthly_reset"
    ANNUAL_MONTHLY_RESET = "annual_monthly_reset"
    ANNUAL_MONTHLY_RESET_WITH_DOWNGRADE = "annual_monthly_reset_with_downgrade"
    REFUND = "refund"
    MANUAL_ADJUSTMENT = "manual_adjustment"


class WebhookEventStatus(str, Enum):
    """Outcome recorded for an inbound provider event."""

    PROCESSED = "processed"
    FAILED = "failed"


class PlanChangeKind(str, Enum):
    """Classification of a plan transition by plan rank."""

    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL = "lateral"


class Subscription(BaseModel):
    """Per-user subscription record, including any deferred plan change."""

    user_id: str
    plan_id: PlanKey = PlanKey.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    pending_plan_id: Optional[PlanKey] = None
    pending_effective_date: Optional[datetime] = None
    pending_provider_subscription_id: Optional[str] = None
    last_token_reset_at: Optional[datetime] = None
    next_token_reset_at: Optional[datetime] = None
    last_reset_invoice_id: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    def pending_change_due(self, now: datetime) -> bool:
        """Return ``True`` once a deferred plan change has reached its effective date."""

        if self.pending_plan_id is None or self.pending_effective_date is None:
            return False
        return now >= self.pending_effective_date


class TokenLedgerEntry(BaseModel):
    """Immutable record of a single balance change."""

    entry_id: Optional[int] = None
    user_id: str
    change: int
    reason: LedgerReason
    balance_after: int = Field(ge=0)
    metadata: Dict[str, str] = Field(default_factory=dict)
    dedupe_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    @field_validator("metadata", mode="before")
    @classmethod
    def _stringify_metadata(cls, value: object) -> Dict[str, str]:
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items() if v is not None}
        return {}


class WebhookEventRecord(BaseModel):
    """Idempotency ledger row for a provider event."""

    event_id: str
    event_type: str
    status: WebhookEventStatus
    raw_payload: Dict[str, object] = Field(default_factory=dict)
    error_message: Optional[str] = None
    attempts: int = 1
    processed_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)


class AdjustResult(BaseModel):
    """Result of a balance adjustment; insufficient balance is a rejection, not an error."""

    success: bool
    balance: int
    error: Optional[str] = None
    duplicate: bool = False
    entry: Optional[TokenLedgerEntry] = None

    model_config = ConfigDict(frozen=True)


class ResetResult(BaseModel):
    """Result of an invoice-keyed balance reset."""

    success: bool
    balance: int
    already_processed: bool = False

    model_config = ConfigDict(frozen=True)


class ClaimResetResult(BaseModel):
    """Result of the sweeper's claim-and-reset for one annual cycle."""

    success: bool
    balance: Optional[int] = None
    already_claimed: bool = False
    next_reset_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class PlanChange(BaseModel):
    """Describes how a completed subscription checkout altered the plan."""

    kind: PlanChangeKind
    previous_plan: PlanKey
    requested_plan: PlanKey
    tokens_granted: int = 0

    model_config = ConfigDict(frozen=True)


class ReconciliationError(BaseModel):
    user_id: str
    error: str

    model_config = ConfigDict(frozen=True)


class ReconciliationSummary(BaseModel):
    """Totals reported by one sweep of annual token resets."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[ReconciliationError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)


__all__ = [
    "AdjustResult",
    "ClaimResetResult",
    "LedgerReason",
    "PlanChange",
    "PlanChangeKind",
    "ReconciliationError",
    "ReconciliationSummary",
    "ResetResult",
    "Subscription",
    "TokenLedgerEntry",
    "WebhookEventRecord",
    "WebhookEventStatus",
    "utcnow",
]
