"""Domain enums shared by plan, pricing, and billing computation."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class PlanKey(str, Enum):
    """Canonical identifiers for subscription plans."""

    FREE = "free"
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"


class BillingInterval(str, Enum):
    """Supported billing frequencies."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    """Lifecycle state for subscriptions."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Market(str, Enum):
    """Regional storefronts with their own price lists."""

    US = "us"
    ES = "es"
    MX = "mx"


DEFAULT_MARKET = Market.US


def normalize_market(value: Optional[str], *, default: Market = DEFAULT_MARKET) -> Market:
    """Coerce free-form input into a supported market, falling back to ``default``."""

    if isinstance(value, Market):
        return value
    if not value:
        return default
    try:
        return Market(value.strip().lower())
    except ValueError:
        return default


_PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def status_from_provider(value: Optional[str]) -> SubscriptionStatus:
    """Map a payment provider subscription status onto the internal status set."""

    if not value:
        raise ValueError("subscription status missing")
    try:
        return _PROVIDER_STATUS_MAP[value.strip().lower()]
    except KeyError as exc:
        raise ValueError(f"Unsupported subscription status: {value!r}") from exc


def interval_from_provider(value: Optional[str]) -> Optional[BillingInterval]:
    """Translate provider recurrence names (``month``/``year``) to intervals."""

    if not value:
        return None
    lowered = value.strip().lower()
    if lowered in {"month", "monthly"}:
        return BillingInterval.MONTHLY
    if lowered in {"year", "annual", "yearly"}:
        return BillingInterval.ANNUAL
    return None
