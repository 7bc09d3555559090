"""Subscription state machine: plan changes, pending downgrades, and schedule bookkeeping.

The functions here are pure transformations of :class:`Subscription` records.
Callers read a record, transform it, and write it back through
:meth:`SubscriptionRepository.save` with the version they read, so a concurrent
writer causes the save to fail instead of being silently overwritten.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Protocol, Sequence, Tuple

from dateutil.relativedelta import relativedelta

from ..entitlements.catalog import plan_rank
from ..entitlements.models import BillingInterval, PlanKey, SubscriptionStatus
from .models import PlanChangeKind, Subscription

logger = logging.getLogger("billing.subscriptions")

TOKEN_CYCLE = relativedelta(months=1)


class SubscriptionRepository(Protocol):
    """Persistence operations owned by the subscription store."""

    def get(self, user_id: str) -> Optional[Subscription]:
        ...

    def find_by_customer(self, provider_customer_id: str) -> Optional[Subscription]:
        ...

    def find_by_provider_subscription(self, provider_subscription_id: str) -> Optional[Subscription]:
        ...

    def save(self, subscription: Subscription, *, expected_version: Optional[int]) -> Subscription:
        """Persist ``subscription`` if the stored version still equals ``expected_version``.

        ``expected_version=None`` means the caller observed no row. Raises
        :class:`~.exceptions.ConcurrentModificationError` on mismatch.
        """

    def list_due_for_token_reset(self, now: datetime, *, limit: int = 500) -> Sequence[Subscription]:
        ...


def next_cycle(moment: datetime) -> datetime:
    return moment + TOKEN_CYCLE


def is_current_subscription(subscription: Optional[Subscription], provider_subscription_id: Optional[str]) -> bool:
    """Return ``True`` when an event about ``provider_subscription_id`` concerns the user's live subscription.

    Events that reference a superseded provider subscription, or that carry no
    subscription reference at all, must not mutate the record.
    """

    if subscription is None or not provider_subscription_id:
        return False
    return subscription.provider_subscription_id == provider_subscription_id


def locate_subscription(
    repository: SubscriptionRepository,
    *,
    provider_customer_id: Optional[str],
    provider_subscription_id: Optional[str],
) -> Optional[Subscription]:
    """Find a user's record by provider customer id, falling back to the subscription id."""

    if provider_customer_id:
        found = repository.find_by_customer(provider_customer_id)
        if found is not None:
            return found
    if provider_subscription_id:
        return repository.find_by_provider_subscription(provider_subscription_id)
    return None


def classify_plan_change(previous: PlanKey, requested: PlanKey) -> PlanChangeKind:
    previous_rank = plan_rank(previous)
    requested_rank = plan_rank(requested)
    if requested_rank > previous_rank:
        return PlanChangeKind.UPGRADE
    if requested_rank < previous_rank:
        return PlanChangeKind.DOWNGRADE
    return PlanChangeKind.LATERAL


def normalize_schedule(subscription: Subscription, now: datetime) -> Subscription:
    """Keep ``next_token_reset_at`` set only for active annual subscriptions."""

    if subscription.billing_interval == BillingInterval.ANNUAL and subscription.is_active:
        if subscription.next_token_reset_at is not None:
            return subscription
        if subscription.last_token_reset_at is not None:
            return subscription.model_copy(
                update={"next_token_reset_at": next_cycle(subscription.last_token_reset_at)}
            )
        return subscription.model_copy(
            update={"last_token_reset_at": now, "next_token_reset_at": next_cycle(now)}
        )
    if subscription.next_token_reset_at is None:
        return subscription
    return subscription.model_copy(update={"next_token_reset_at": None})


def _clear_pending() -> dict:
    return {
        "pending_plan_id": None,
        "pending_effective_date": None,
        "pending_provider_subscription_id": None,
    }


def apply_checkout(
    current: Optional[Subscription],
    *,
    user_id: str,
    plan_id: PlanKey,
    provider_subscription_id: str,
    provider_customer_id: str,
    billing_interval: BillingInterval,
    period_start: Optional[datetime],
    period_end: Optional[datetime],
    now: datetime,
) -> Tuple[Subscription, PlanChangeKind]:
    """Fold a completed subscription checkout into the user's record.

    Upgrades take effect immediately and supersede any pending downgrade.
    Downgrades keep the current plan and record the requested one as pending
    until the end of the period already paid for at the higher plan. Lateral
    changes only refresh the interval bookkeeping. Period bounds the provider
    did not report keep their stored values.
    """

    base = current or Subscription(user_id=user_id, created_at=now, updated_at=now)
    kind = classify_plan_change(base.plan_id, plan_id)
    paid_through = base.current_period_end

    interval_changed = base.billing_interval != billing_interval
    update = {
        "status": SubscriptionStatus.ACTIVE,
        "billing_interval": billing_interval,
        "provider_subscription_id": provider_subscription_id,
        "provider_customer_id": provider_customer_id,
        "updated_at": now,
    }
    if period_start is not None:
        update["current_period_start"] = period_start
    if period_end is not None:
        update["current_period_end"] = period_end
    if interval_changed:
        update["next_token_reset_at"] = None
        update["last_token_reset_at"] = None

    if kind == PlanChangeKind.UPGRADE:
        update["plan_id"] = plan_id
        update.update(_clear_pending())
        if billing_interval == BillingInterval.ANNUAL:
            # The upgrade grant starts a fresh monthly cycle.
            update["last_token_reset_at"] = now
            update["next_token_reset_at"] = next_cycle(now)
    elif kind == PlanChangeKind.DOWNGRADE:
        update["pending_plan_id"] = plan_id
        update["pending_effective_date"] = paid_through or period_end or now
        update["pending_provider_subscription_id"] = provider_subscription_id
    else:
        update.update(_clear_pending())

    updated = normalize_schedule(base.model_copy(update=update), now)
    logger.info(
        "Subscription checkout for user %s classified as %s (%s -> %s)",
        user_id,
        kind.value,
        base.plan_id.value,
        plan_id.value,
        extra={"user_id": user_id, "plan_change": kind.value},
    )
    return updated, kind


def apply_due_pending_change(subscription: Subscription, now: datetime) -> Tuple[Subscription, Optional[PlanKey]]:
    """Adopt a pending plan once its effective date has passed.

    Returns the (possibly unchanged) record and the plan it replaced, or
    ``None`` when nothing was applied.
    """

    if not subscription.pending_change_due(now):
        return subscription, None
    previous = subscription.plan_id
    update = {"plan_id": subscription.pending_plan_id, "updated_at": now}
    if subscription.pending_provider_subscription_id:
        update["provider_subscription_id"] = subscription.pending_provider_subscription_id
    update.update(_clear_pending())
    logger.info(
        "Applying pending downgrade for user %s (%s -> %s)",
        subscription.user_id,
        previous.value,
        subscription.pending_plan_id.value,
        extra={"user_id": subscription.user_id},
    )
    return subscription.model_copy(update=update), previous


def with_status(
    subscription: Subscription,
    status: SubscriptionStatus,
    now: datetime,
    *,
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
) -> Subscription:
    update = {"status": status, "updated_at": now}
    if current_period_start is not None:
        update["current_period_start"] = current_period_start
    if current_period_end is not None:
        update["current_period_end"] = current_period_end
    return normalize_schedule(subscription.model_copy(update=update), now)


def reset_to_free(subscription: Subscription, now: datetime) -> Subscription:
    """Drop a user back to the free plan after their live subscription ended."""

    update = {
        "plan_id": PlanKey.FREE,
        "status": SubscriptionStatus.ACTIVE,
        "billing_interval": BillingInterval.MONTHLY,
        "provider_subscription_id": None,
        "next_token_reset_at": None,
        "updated_at": now,
    }
    update.update(_clear_pending())
    return subscription.model_copy(update=update)


__all__ = [
    "SubscriptionRepository",
    "apply_checkout",
    "apply_due_pending_change",
    "classify_plan_change",
    "is_current_subscription",
    "locate_subscription",
    "next_cycle",
    "normalize_schedule",
    "reset_to_free",
    "with_status",
]
