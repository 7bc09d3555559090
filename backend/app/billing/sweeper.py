"""Scheduled sweep that replenishes tokens for annually billed subscriptions.

Annual subscriptions are invoiced once a year, so their monthly token reset is
driven by ``next_token_reset_at`` instead of a renewal invoice. Each due user is
reset through :meth:`TokenLedger.reset_with_next_schedule`, whose claim makes
overlapping sweeps harmless: the loser reports ``already_claimed``.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from .exceptions import ConcurrentModificationError
from .ledger import TokenLedger
from .models import (
    LedgerReason,
    ReconciliationError,
    ReconciliationSummary,
    Subscription,
    utcnow,
)
from .subscriptions import SubscriptionRepository, apply_due_pending_change

logger = logging.getLogger("billing.sweeper")


class ReconciliationSweeper:
    def __init__(
        self,
        *,
        subscriptions: SubscriptionRepository,
        ledger: TokenLedger,
        clock: Optional[Callable[[], datetime]] = None,
        batch_size: int = 500,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.subscriptions = subscriptions
        self.ledger = ledger
        self._clock = clock or utcnow
        self.batch_size = batch_size

    def run(self, now: Optional[datetime] = None) -> ReconciliationSummary:
        """Reset every annual subscription whose token cycle is due at ``now``."""

        now = now or self._clock()
        summary = ReconciliationSummary(started_at=now)
        due = self.subscriptions.list_due_for_token_reset(now, limit=self.batch_size)
        logger.info("Token reset sweep found %s due subscriptions", len(due))

        for subscription in due:
            summary.processed += 1
            try:
                applied = self._reconcile(subscription, now)
            except Exception as exc:
                logger.exception(
                    "Token reset failed for user %s",
                    subscription.user_id,
                    extra={"user_id": subscription.user_id},
                )
                summary.failed += 1
                summary.errors.append(
                    ReconciliationError(user_id=subscription.user_id, error=str(exc) or exc.__class__.__name__)
                )
                continue
            if applied:
                summary.succeeded += 1
            else:
                summary.skipped += 1

        logger.info(
            "Token reset sweep finished: processed=%s succeeded=%s failed=%s skipped=%s",
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.skipped,
        )
        return summary

    def _reconcile(self, subscription: Subscription, now: datetime) -> bool:
        subscription, replaced_plan = self._apply_pending_change(subscription, now)

        reason = LedgerReason.ANNUAL_MONTHLY_RESET
        metadata = {"source": "reconciliation_sweep"}
        if replaced_plan is not None:
            reason = LedgerReason.ANNUAL_MONTHLY_RESET_WITH_DOWNGRADE
            metadata["previousPlan"] = replaced_plan.value

        result = self.ledger.reset_with_next_schedule(
            subscription.user_id,
            subscription.plan_id,
            reason,
            metadata,
            claim_check=True,
            now=now,
        )
        if result.already_claimed:
            return False
        logger.info(
            "Reset tokens for annual user %s to %s; next reset at %s",
            subscription.user_id,
            result.balance,
            result.next_reset_at,
            extra={"user_id": subscription.user_id},
        )
        return True

    def _apply_pending_change(self, subscription: Subscription, now: datetime):
        """Adopt a due pending downgrade, tolerating a concurrent writer that already did."""

        updated, replaced_plan = apply_due_pending_change(subscription, now)
        if replaced_plan is None:
            return subscription, None
        try:
            saved = self.subscriptions.save(updated, expected_version=subscription.version)
        except ConcurrentModificationError:
            latest = self.subscriptions.get(subscription.user_id)
            if latest is None or latest.pending_change_due(now):
                raise
            return latest, None
        return saved, replaced_plan


__all__ = ["ReconciliationSweeper"]
