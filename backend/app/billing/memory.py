"""In-memory repositories suitable for tests and local development.

The subscription and ledger repositories share one lock so that operations
spanning the subscription and balance "tables" are as indivisible as their
PostgreSQL counterparts.
"""
from __future__ import annotations

from datetime import datetime
from threading import RLock
from typing import Dict, List, Mapping, Optional, Sequence

from ..entitlements.models import BillingInterval, SubscriptionStatus
from .exceptions import ConcurrentModificationError
from .ledger import INSUFFICIENT_TOKENS
from .models import (
    AdjustResult,
    ClaimResetResult,
    LedgerReason,
    ResetResult,
    Subscription,
    TokenLedgerEntry,
    WebhookEventRecord,
    WebhookEventStatus,
    utcnow,
)


class InMemorySubscriptionRepository:
    def __init__(self, *, lock: Optional[RLock] = None) -> None:
        self.lock = lock or RLock()
        self._records: Dict[str, Subscription] = {}

    def get(self, user_id: str) -> Optional[Subscription]:
        with self.lock:
            return self._records.get(user_id)

    def find_by_customer(self, provider_customer_id: str) -> Optional[Subscription]:
        with self.lock:
            for record in self._records.values():
                if record.provider_customer_id == provider_customer_id:
                    return record
        return None

    def find_by_provider_subscription(self, provider_subscription_id: str) -> Optional[Subscription]:
        with self.lock:
            for record in self._records.values():
                if provider_subscription_id in {
                    record.provider_subscription_id,
                    record.pending_provider_subscription_id,
                }:
                    return record
        return None

    def save(self, subscription: Subscription, *, expected_version: Optional[int]) -> Subscription:
        with self.lock:
            stored = self._records.get(subscription.user_id)
            stored_version = stored.version if stored is not None else None
            if stored_version != expected_version:
                raise ConcurrentModificationError(subscription.user_id, expected_version)
            persisted = subscription.model_copy(
                update={
                    "version": (stored_version or 0) + 1,
                    "updated_at": utcnow(),
                }
            )
            self._records[subscription.user_id] = persisted
            return persisted

    def list_due_for_token_reset(self, now: datetime, *, limit: int = 500) -> Sequence[Subscription]:
        with self.lock:
            due = [
                record
                for record in self._records.values()
                if _is_due(record, now)
            ]
        due.sort(key=lambda record: record.next_token_reset_at)
        return due[:limit]

    def _advance_schedule(self, user_id: str, now: datetime, next_reset_at: datetime, *, claim_check: bool) -> bool:
        """Advance the user's annual schedule; caller must hold ``lock``."""

        record = self._records.get(user_id)
        if record is None:
            return False
        if claim_check and not _is_due(record, now):
            return False
        self._records[user_id] = record.model_copy(
            update={
                "last_token_reset_at": now,
                "next_token_reset_at": next_reset_at,
                "version": record.version + 1,
                "updated_at": utcnow(),
            }
        )
        return True


def _is_due(record: Subscription, now: datetime) -> bool:
    return (
        record.billing_interval == BillingInterval.ANNUAL
        and record.status == SubscriptionStatus.ACTIVE
        and record.next_token_reset_at is not None
        and record.next_token_reset_at <= now
    )


class InMemoryTokenLedgerRepository:
    def __init__(self, subscriptions: Optional[InMemorySubscriptionRepository] = None) -> None:
        self.subscriptions = subscriptions or InMemorySubscriptionRepository()
        self.lock = self.subscriptions.lock
        self.balances: Dict[str, int] = {}
        self.entries: List[TokenLedgerEntry] = []
        self._dedupe_keys: set[str] = set()

    def get_balance(self, user_id: str) -> int:
        with self.lock:
            return self.balances.get(user_id, 0)

    def list_entries(self, user_id: str, *, limit: int = 50) -> Sequence[TokenLedgerEntry]:
        with self.lock:
            matching = [entry for entry in self.entries if entry.user_id == user_id]
        return list(reversed(matching))[:limit]

    def _append(
        self,
        user_id: str,
        change: int,
        reason: LedgerReason,
        balance_after: int,
        metadata: Mapping[str, str],
        dedupe_key: Optional[str],
    ) -> TokenLedgerEntry:
        entry = TokenLedgerEntry(
            entry_id=len(self.entries) + 1,
            user_id=user_id,
            change=change,
            reason=reason,
            balance_after=balance_after,
            metadata=dict(metadata),
            dedupe_key=dedupe_key,
        )
        self.entries.append(entry)
        if dedupe_key:
            self._dedupe_keys.add(dedupe_key)
        return entry

    def adjust(
        self,
        user_id: str,
        delta: int,
        reason: LedgerReason,
        metadata: Mapping[str, str],
        *,
        dedupe_key: Optional[str] = None,
    ) -> AdjustResult:
        with self.lock:
            current = self.balances.get(user_id, 0)
            if dedupe_key and dedupe_key in self._dedupe_keys:
                return AdjustResult(success=True, balance=current, duplicate=True)
            if current + delta < 0:
                return AdjustResult(success=False, balance=current, error=INSUFFICIENT_TOKENS)
            new_balance = current + delta
            self.balances[user_id] = new_balance
            entry = self._append(user_id, delta, reason, new_balance, metadata, dedupe_key)
            return AdjustResult(success=True, balance=new_balance, entry=entry)

    def reset_balance(
        self,
        user_id: str,
        amount: int,
        reason: LedgerReason,
        metadata: Mapping[str, str],
        *,
        dedupe_key: str,
    ) -> ResetResult:
        with self.lock:
            current = self.balances.get(user_id, 0)
            if dedupe_key in self._dedupe_keys:
                return ResetResult(success=True, balance=current, already_processed=True)
            self.balances[user_id] = amount
            self._append(user_id, amount - current, reason, amount, metadata, dedupe_key)
            return ResetResult(success=True, balance=amount)

    def claim_and_reset(
        self,
        user_id: str,
        amount: int,
        reason: LedgerReason,
        metadata: Mapping[str, str],
        *,
        now: datetime,
        next_reset_at: datetime,
        claim_check: bool = True,
    ) -> ClaimResetResult:
        with self.lock:
            claimed = self.subscriptions._advance_schedule(
                user_id, now, next_reset_at, claim_check=claim_check
            )
            if not claimed:
                return ClaimResetResult(success=False, already_claimed=True)
            current = self.balances.get(user_id, 0)
            self.balances[user_id] = amount
            self._append(user_id, amount - current, reason, amount, metadata, None)
            return ClaimResetResult(success=True, balance=amount, next_reset_at=next_reset_at)


class InMemoryWebhookEventRepository:
    def __init__(self) -> None:
        self._lock = RLock()
        self.records: Dict[str, WebhookEventRecord] = {}

    def is_processed(self, event_id: str) -> bool:
        with self._lock:
            record = self.records.get(event_id)
            return record is not None and record.status == WebhookEventStatus.PROCESSED

    def get(self, event_id: str) -> Optional[WebhookEventRecord]:
        with self._lock:
            return self.records.get(event_id)

    def mark_outcome(
        self,
        event_id: str,
        event_type: str,
        payload: Mapping[str, object],
        status: WebhookEventStatus,
        error_message: Optional[str] = None,
    ) -> WebhookEventRecord:
        with self._lock:
            previous = self.records.get(event_id)
            record = WebhookEventRecord(
                event_id=event_id,
                event_type=event_type,
                status=status,
                raw_payload=dict(payload),
                error_message=error_message,
                attempts=(previous.attempts + 1) if previous else 1,
            )
            self.records[event_id] = record
            return record


__all__ = [
    "InMemorySubscriptionRepository",
    "InMemoryTokenLedgerRepository",
    "InMemoryWebhookEventRepository",
]
