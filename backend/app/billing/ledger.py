"""Token ledger: balance mutation with an append-only history.

Every balance change is paired with exactly one :class:`TokenLedgerEntry`.
Mutations are delegated to the repository, which must perform the balance
check, the balance write, and the entry insert as one indivisible unit per user.
Entries may carry a ``dedupe_key``; a second mutation with the same key is
reported as a duplicate and leaves the balance untouched.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Mapping, Optional, Protocol, Sequence

from ..entitlements.catalog import monthly_allotment
from ..entitlements.models import PlanKey
from .models import (
    AdjustResult,
    ClaimResetResult,
    LedgerReason,
    ResetResult,
    TokenLedgerEntry,
    utcnow,
)
from .subscriptions import next_cycle

logger = logging.getLogger("billing.ledger")

INSUFFICIENT_TOKENS = "insufficient_tokens"


class TokenLedgerRepository(Protocol):
    """Atomic persistence primitives for balances and ledger entries."""

    def get_balance(self, user_id: str) -> int:
        ...

    def list_entries(self, user_id: str, *, limit: int = 50) -> Sequence[TokenLedgerEntry]:
        ...

    def adjust(
        self,
        user_id: str,
        delta: int,
        reason: LedgerReason,
        metadata: Mapping[str, str],
        *,
        dedupe_key: Optional[str] = None,
    ) -> AdjustResult:
        ...

    def reset_balance(
        self,
        user_id: str,
        amount: int,
        reason: LedgerReason,
        metadata: Mapping[str, str],
        *,
        dedupe_key: str,
    ) -> ResetResult:
        ...

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
        """Reset the balance and advance the user's annual token schedule.

        With ``claim_check`` the subscription's ``next_token_reset_at`` must
        still be due at ``now``; advancing it is the claim, so only one of
        several concurrent callers succeeds and the rest get
        ``already_claimed=True`` with no mutation.
        """


def invoice_dedupe_key(invoice_id: str) -> str:
    return f"invoice:{invoice_id}"


def checkout_dedupe_key(session_id: str) -> str:
    return f"checkout:{session_id}"


class TokenLedger:
    """Public contract for reading and mutating token balances."""

    def __init__(
        self,
        repository: TokenLedgerRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or utcnow

    def get_balance(self, user_id: str) -> int:
        return self._repository.get_balance(user_id)

    def history(self, user_id: str, *, limit: int = 50) -> Sequence[TokenLedgerEntry]:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        return self._repository.list_entries(user_id, limit=limit)

    def adjust(
        self,
        user_id: str,
        delta: int,
        reason: LedgerReason,
        metadata: Optional[Mapping[str, object]] = None,
        *,
        dedupe_key: Optional[str] = None,
    ) -> AdjustResult:
        """Apply a signed change; debits that would go below zero are rejected."""

        if delta == 0:
            raise ValueError("delta must be non-zero")
        result = self._repository.adjust(
            user_id,
            delta,
            reason,
            _stringify(metadata),
            dedupe_key=dedupe_key,
        )
        if result.duplicate:
            logger.info(
                "Skipped duplicate token adjustment for user %s (key=%s)",
                user_id,
                dedupe_key,
                extra={"user_id": user_id, "dedupe_key": dedupe_key},
            )
        elif not result.success:
            logger.warning(
                "Rejected token debit of %s for user %s: balance %s",
                delta,
                user_id,
                result.balance,
                extra={"user_id": user_id, "reason": reason.value},
            )
        else:
            logger.info(
                "Adjusted tokens for user %s by %s (%s) -> %s",
                user_id,
                delta,
                reason.value,
                result.balance,
                extra={"user_id": user_id, "reason": reason.value},
            )
        return result

    def reset_for_invoice(
        self,
        user_id: str,
        invoice_id: str,
        plan_id: PlanKey,
        reason: LedgerReason = LedgerReason.MONTHLY_RESET,
        metadata: Optional[Mapping[str, object]] = None,
    ) -> ResetResult:
        """Set the balance to the plan allotment once per invoice."""

        if not invoice_id:
            raise ValueError("invoice_id is required for an invoice reset")
        payload = {"invoiceId": invoice_id, "planId": plan_id.value, **(metadata or {})}
        result = self._repository.reset_balance(
            user_id,
            monthly_allotment(plan_id),
            reason,
            _stringify(payload),
            dedupe_key=invoice_dedupe_key(invoice_id),
        )
        if result.already_processed:
            logger.info(
                "Invoice %s already applied for user %s",
                invoice_id,
                user_id,
                extra={"user_id": user_id, "invoice_id": invoice_id},
            )
        else:
            logger.info(
                "Reset tokens for user %s to %s for invoice %s",
                user_id,
                result.balance,
                invoice_id,
                extra={"user_id": user_id, "invoice_id": invoice_id},
            )
        return result

    def reset_with_next_schedule(
        self,
        user_id: str,
        plan_id: PlanKey,
        reason: LedgerReason = LedgerReason.ANNUAL_MONTHLY_RESET,
        metadata: Optional[Mapping[str, object]] = None,
        *,
        claim_check: bool = True,
        now: Optional[datetime] = None,
    ) -> ClaimResetResult:
        """Claim the user's due annual cycle, reset the balance, and schedule the next one."""

        now = now or self._clock()
        payload = {"planId": plan_id.value, **(metadata or {})}
        result = self._repository.claim_and_reset(
            user_id,
            monthly_allotment(plan_id),
            reason,
            _stringify(payload),
            now=now,
            next_reset_at=next_cycle(now),
            claim_check=claim_check,
        )
        if result.already_claimed:
            logger.warning(
                "Token cycle for user %s already claimed by another run",
                user_id,
                extra={"user_id": user_id},
            )
        return result


def _stringify(metadata: Optional[Mapping[str, object]]) -> dict:
    if not metadata:
        return {}
    return {str(k): str(v) for k, v in metadata.items() if v is not None}


__all__ = [
    "INSUFFICIENT_TOKENS",
    "TokenLedger",
    "TokenLedgerRepository",
    "checkout_dedupe_key",
    "invoice_dedupe_key",
]
