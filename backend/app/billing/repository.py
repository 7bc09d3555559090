"""PostgreSQL persistence for subscriptions, the token ledger, and webhook events.

Every mutation is a single conditional statement or a short transaction that
locks the affected user's row first, so concurrent webhook deliveries and sweep
runs serialize per user. Table definitions live in ``schema.sql``.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Mapping, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..entitlements.models import BillingInterval, PlanKey, SubscriptionStatus
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
)

try:  # pragma: no cover - resolve connection helper when imported from FastAPI app
    from backend.app_context import get_conn
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ...app_context import get_conn  # type: ignore[no-redef]


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_subscription(row: dict) -> Subscription:
    pending = row.get("pending_plan_id")
    return Subscription(
        user_id=str(row["user_id"]),
        plan_id=PlanKey(row["plan_id"]),
        status=SubscriptionStatus(row["status"]),
        billing_interval=BillingInterval(row["billing_interval"]),
        provider_subscription_id=row.get("provider_subscription_id"),
        provider_customer_id=row.get("provider_customer_id"),
        current_period_start=row.get("current_period_start"),
        current_period_end=row.get("current_period_end"),
        pending_plan_id=PlanKey(pending) if pending else None,
        pending_effective_date=row.get("pending_effective_date"),
        pending_provider_subscription_id=row.get("pending_provider_subscription_id"),
        last_token_reset_at=row.get("last_token_reset_at"),
        next_token_reset_at=row.get("next_token_reset_at"),
        last_reset_invoice_id=row.get("last_reset_invoice_id"),
        version=int(row["version"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_entry(row: dict) -> TokenLedgerEntry:
    return TokenLedgerEntry(
        entry_id=int(row["id"]),
        user_id=str(row["user_id"]),
        change=int(row["change"]),
        reason=LedgerReason(row["reason"]),
        balance_after=int(row["balance_after"]),
        metadata=row.get("metadata") or {},
        dedupe_key=row.get("dedupe_key"),
        created_at=row["created_at"],
    )


def _row_to_webhook_event(row: dict) -> WebhookEventRecord:
    return WebhookEventRecord(
        event_id=row["event_id"],
        event_type=row["event_type"],
        status=WebhookEventStatus(row["status"]),
        raw_payload=row.get("raw_payload") or {},
        error_message=row.get("error_message"),
        attempts=int(row.get("attempts") or 1),
        processed_at=row["processed_at"],
    )


class _PostgresRepository:
    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()


_SUBSCRIPTION_COLUMNS = (
    "plan_id",
    "status",
    "billing_interval",
    "provider_subscription_id",
    "provider_customer_id",
    "current_period_start",
    "current_period_end",
    "pending_plan_id",
    "pending_effective_date",
    "pending_provider_subscription_id",
    "last_token_reset_at",
    "next_token_reset_at",
    "last_reset_invoice_id",
)


def _subscription_params(subscription: Subscription) -> dict:
    return {
        "user_id": subscription.user_id,
        "plan_id": subscription.plan_id.value,
        "status": subscription.status.value,
        "billing_interval": subscription.billing_interval.value,
        "provider_subscription_id": subscription.provider_subscription_id,
        "provider_customer_id": subscription.provider_customer_id,
        "current_period_start": subscription.current_period_start,
        "current_period_end": subscription.current_period_end,
        "pending_plan_id": subscription.pending_plan_id.value if subscription.pending_plan_id else None,
        "pending_effective_date": subscription.pending_effective_date,
        "pending_provider_subscription_id": subscription.pending_provider_subscription_id,
        "last_token_reset_at": subscription.last_token_reset_at,
        "next_token_reset_at": subscription.next_token_reset_at,
        "last_reset_invoice_id": subscription.last_reset_invoice_id,
    }


class PostgresSubscriptionRepository(_PostgresRepository):
    """Subscription store backed by ``user_subscriptions``."""

    def get(self, user_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM user_subscriptions
                WHERE user_id = %s
                LIMIT 1
                """,
                (user_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def find_by_customer(self, provider_customer_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM user_subscriptions
                WHERE provider_customer_id = %s
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                (provider_customer_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def find_by_provider_subscription(self, provider_subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM user_subscriptions
                WHERE provider_subscription_id = %s
                   OR pending_provider_subscription_id = %s
                LIMIT 1
                """,
                (provider_subscription_id, provider_subscription_id),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def save(self, subscription: Subscription, *, expected_version: Optional[int]) -> Subscription:
        params = _subscription_params(subscription)
        with self._cursor() as cursor:
            if expected_version is None:
                cursor.execute(
                    f"""
                    INSERT INTO user_subscriptions (user_id, {", ".join(_SUBSCRIPTION_COLUMNS)}, version)
                    VALUES (%(user_id)s, {", ".join(f"%({name})s" for name in _SUBSCRIPTION_COLUMNS)}, 1)
                    ON CONFLICT (user_id) DO NOTHING
                    RETURNING *
                    """,
                    params,
                )
            else:
                cursor.execute(
                    f"""
                    UPDATE user_subscriptions
                    SET {", ".join(f"{name} = %({name})s" for name in _SUBSCRIPTION_COLUMNS)},
                        version = version + 1,
                        updated_at = NOW()
                    WHERE user_id = %(user_id)s AND version = %(expected_version)s
                    RETURNING *
                    """,
                    {**params, "expected_version": expected_version},
                )
            row = cursor.fetchone()
            if not row:
                raise ConcurrentModificationError(subscription.user_id, expected_version)
            return _row_to_subscription(row)

    def list_due_for_token_reset(self, now: datetime, *, limit: int = 500) -> Sequence[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM user_subscriptions
                WHERE billing_interval = %s
                  AND status = %s
                  AND next_token_reset_at IS NOT NULL
                  AND next_token_reset_at <= %s
                ORDER BY next_token_reset_at
                LIMIT %s
                """,
                (BillingInterval.ANNUAL.value, SubscriptionStatus.ACTIVE.value, now, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]


class PostgresTokenLedgerRepository(_PostgresRepository):
    """Token balances and the append-only ledger."""

    def get_balance(self, user_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute("SELECT balance FROM token_balances WHERE user_id = %s", (user_id,))
            row = cursor.fetchone()
            return int(row["balance"]) if row else 0

    def list_entries(self, user_id: str, *, limit: int = 50) -> Sequence[TokenLedgerEntry]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM token_ledger_entries
                WHERE user_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_entry(row) for row in rows]

    def _lock_balance(self, cursor: PgCursor, user_id: str) -> int:
        cursor.execute(
            """
            INSERT INTO token_balances (user_id, balance)
            VALUES (%s, 0)
            ON CONFLICT (user_id) DO NOTHING
            """,
            (user_id,),
        )
        cursor.execute(
            "SELECT balance FROM token_balances WHERE user_id = %s FOR UPDATE",
            (user_id,),
        )
        return int(cursor.fetchone()["balance"])

    def _dedupe_key_exists(self, cursor: PgCursor, dedupe_key: str) -> bool:
        cursor.execute(
            "SELECT 1 FROM token_ledger_entries WHERE dedupe_key = %s LIMIT 1",
            (dedupe_key,),
        )
        return cursor.fetchone() is not None

    def _write(
        self,
        cursor: PgCursor,
        user_id: str,
        change: int,
        new_balance: int,
        reason: LedgerReason,
        metadata: Mapping[str, str],
        dedupe_key: Optional[str],
    ) -> TokenLedgerEntry:
        cursor.execute(
            """
            UPDATE token_balances
            SET balance = %s, updated_at = NOW()
            WHERE user_id = %s
            """,
            (new_balance, user_id),
        )
        cursor.execute(
            """
            INSERT INTO token_ledger_entries (user_id, change, reason, balance_after, metadata, dedupe_key)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                user_id,
                change,
                reason.value,
                new_balance,
                psycopg2.extras.Json(dict(metadata)),
                dedupe_key,
            ),
        )
        row = cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist ledger entry")
        return _row_to_entry(row)

    def adjust(
        self,
        user_id: str,
        delta: int,
        reason: LedgerReason,
        metadata: Mapping[str, str],
        *,
        dedupe_key: Optional[str] = None,
    ) -> AdjustResult:
        with self._cursor() as cursor:
            current = self._lock_balance(cursor, user_id)
            if dedupe_key and self._dedupe_key_exists(cursor, dedupe_key):
                return AdjustResult(success=True, balance=current, duplicate=True)
            if current + delta < 0:
                return AdjustResult(success=False, balance=current, error=INSUFFICIENT_TOKENS)
            entry = self._write(cursor, user_id, delta, current + delta, reason, metadata, dedupe_key)
            return AdjustResult(success=True, balance=entry.balance_after, entry=entry)

    def reset_balance(
        self,
        user_id: str,
        amount: int,
        reason: LedgerReason,
        metadata: Mapping[str, str],
        *,
        dedupe_key: str,
    ) -> ResetResult:
        with self._cursor() as cursor:
            current = self._lock_balance(cursor, user_id)
            if self._dedupe_key_exists(cursor, dedupe_key):
                return ResetResult(success=True, balance=current, already_processed=True)
            self._write(cursor, user_id, amount - current, amount, reason, metadata, dedupe_key)
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
        claim_clause = ""
        if claim_check:
            claim_clause = """
                  AND billing_interval = %(annual)s
                  AND status = %(active)s
                  AND next_token_reset_at IS NOT NULL
                  AND next_token_reset_at <= %(now)s
            """
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                UPDATE user_subscriptions
                SET last_token_reset_at = %(now)s,
                    next_token_reset_at = %(next_reset_at)s,
                    version = version + 1,
                    updated_at = NOW()
                WHERE user_id = %(user_id)s
                {claim_clause}
                RETURNING next_token_reset_at
                """,
                {
                    "user_id": user_id,
                    "now": now,
                    "next_reset_at": next_reset_at,
                    "annual": BillingInterval.ANNUAL.value,
                    "active": SubscriptionStatus.ACTIVE.value,
                },
            )
            claimed = cursor.fetchone()
            if not claimed:
                return ClaimResetResult(success=False, already_claimed=True)
            current = self._lock_balance(cursor, user_id)
            self._write(cursor, user_id, amount - current, amount, reason, metadata, None)
            return ClaimResetResult(
                success=True,
                balance=amount,
                next_reset_at=claimed["next_token_reset_at"],
            )


class PostgresWebhookEventRepository(_PostgresRepository):
    """Idempotency ledger backed by ``billing_webhook_events``."""

    def is_processed(self, event_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT 1
                FROM billing_webhook_events
                WHERE event_id = %s AND status = %s
                LIMIT 1
                """,
                (event_id, WebhookEventStatus.PROCESSED.value),
            )
            return cursor.fetchone() is not None

    def get(self, event_id: str) -> Optional[WebhookEventRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM billing_webhook_events WHERE event_id = %s LIMIT 1",
                (event_id,),
            )
            row = cursor.fetchone()
            return _row_to_webhook_event(row) if row else None

    def mark_outcome(
        self,
        event_id: str,
        event_type: str,
        payload: Mapping[str, object],
        status: WebhookEventStatus,
        error_message: Optional[str] = None,
    ) -> WebhookEventRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_webhook_events (
                    event_id,
                    event_type,
                    status,
                    raw_payload,
                    error_message,
                    attempts,
                    processed_at
                )
                VALUES (%s, %s, %s, %s, %s, 1, NOW())
                ON CONFLICT (event_id) DO UPDATE SET
                    status = EXCLUDED.status,
                    raw_payload = EXCLUDED.raw_payload,
                    error_message = EXCLUDED.error_message,
                    attempts = billing_webhook_events.attempts + 1,
                    processed_at = NOW()
                RETURNING *
                """,
                (
                    event_id,
                    event_type,
                    status.value,
                    psycopg2.extras.Json(dict(payload)),
                    error_message,
                ),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist webhook event outcome")
            return _row_to_webhook_event(row)


__all__ = [
    "PostgresSubscriptionRepository",
    "PostgresTokenLedgerRepository",
    "PostgresWebhookEventRepository",
    "managed_connection",
]
