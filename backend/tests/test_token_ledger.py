"""Tests for the token ledger and its in-memory repository."""
from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from threading import Barrier, Thread

import pytest

from backend.app.billing import LedgerReason, Subscription, TokenLedger
from backend.app.billing.ledger import INSUFFICIENT_TOKENS, invoice_dedupe_key
from backend.app.billing.memory import InMemorySubscriptionRepository, InMemoryTokenLedgerRepository
from backend.app.entitlements.models import BillingInterval, PlanKey, SubscriptionStatus

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def ledger_components():
    subscriptions = InMemorySubscriptionRepository()
    repository = InMemoryTokenLedgerRepository(subscriptions)
    ledger = TokenLedger(repository, clock=lambda: NOW)
    return subscriptions, repository, ledger


def _seed_annual(subscriptions, user_id="user-1", *, plan=PlanKey.TIER2, next_reset_at=NOW - timedelta(hours=1)):
    return subscriptions.save(
        Subscription(
            user_id=user_id,
            plan_id=plan,
            status=SubscriptionStatus.ACTIVE,
            billing_interval=BillingInterval.ANNUAL,
            provider_subscription_id=f"sub_{user_id}",
            provider_customer_id=f"cus_{user_id}",
            last_token_reset_at=next_reset_at - timedelta(days=30),
            next_token_reset_at=next_reset_at,
        ),
        expected_version=None,
    )


def test_unknown_user_has_zero_balance(ledger_components):
    _, _, ledger = ledger_components
    assert ledger.get_balance("nobody") == 0
    assert ledger.history("nobody") == []


def test_adjust_credits_and_records_entry(ledger_components):
    _, repository, ledger = ledger_components

    result = ledger.adjust("user-1", 40, LedgerReason.PURCHASE, {"sessionId": "cs_1"})

    assert result.success
    assert result.balance == 40
    assert result.entry is not None
    assert result.entry.change == 40
    assert result.entry.balance_after == 40
    assert result.entry.metadata == {"sessionId": "cs_1"}
    assert len(repository.entries) == 1


def test_debit_exceeding_balance_is_rejected_without_entry(ledger_components):
    _, repository, ledger = ledger_components
    ledger.adjust("user-1", 5, LedgerReason.PURCHASE)

    result = ledger.adjust("user-1", -6, LedgerReason.GENERATION_SPEND, {"jobId": "job-9"})

    assert not result.success
    assert result.error == INSUFFICIENT_TOKENS
    assert result.balance == 5
    assert ledger.get_balance("user-1") == 5
    assert len(repository.entries) == 1


def test_zero_delta_is_rejected(ledger_components):
    _, _, ledger = ledger_components
    with pytest.raises(ValueError):
        ledger.adjust("user-1", 0, LedgerReason.MANUAL_ADJUSTMENT)


def test_random_adjustments_never_go_negative_and_entries_sum_to_balance(ledger_components):
    _, repository, ledger = ledger_components
    rng = random.Random(20250301)
    starting = ledger.get_balance("user-1")

    for _ in range(300):
        delta = rng.choice([-50, -20, -5, -1, 1, 3, 10, 25])
        result = ledger.adjust("user-1", delta, LedgerReason.MANUAL_ADJUSTMENT)
        assert result.balance >= 0
        assert ledger.get_balance("user-1") >= 0

    total_change = sum(entry.change for entry in repository.entries if entry.user_id == "user-1")
    assert total_change == ledger.get_balance("user-1") - starting
    assert all(entry.balance_after >= 0 for entry in repository.entries)


def test_adjust_with_dedupe_key_applies_once(ledger_components):
    _, repository, ledger = ledger_components

    first = ledger.adjust("user-1", 300, LedgerReason.PURCHASE, dedupe_key="checkout:cs_1")
    second = ledger.adjust("user-1", 300, LedgerReason.PURCHASE, dedupe_key="checkout:cs_1")

    assert first.success and not first.duplicate
    assert second.success and second.duplicate
    assert ledger.get_balance("user-1") == 300
    assert len(repository.entries) == 1


def test_concurrent_debits_serialize_per_user(ledger_components):
    _, repository, ledger = ledger_components
    ledger.adjust("user-1", 20, LedgerReason.PURCHASE)
    results = []

    def spend() -> None:
        results.append(ledger.adjust("user-1", -1, LedgerReason.GENERATION_SPEND))

    threads = [Thread(target=spend) for _ in range(50)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for result in results if result.success) == 20
    assert ledger.get_balance("user-1") == 0
    assert len(repository.entries) == 21


def test_reset_for_invoice_sets_allotment_once(ledger_components):
    _, repository, ledger = ledger_components
    ledger.adjust("user-1", 7, LedgerReason.PURCHASE)

    first = ledger.reset_for_invoice("user-1", "in_100", PlanKey.TIER2)
    ledger.adjust("user-1", -50, LedgerReason.GENERATION_SPEND)
    second = ledger.reset_for_invoice("user-1", "in_100", PlanKey.TIER2)

    assert first.success and not first.already_processed
    assert first.balance == 300
    assert second.already_processed
    assert ledger.get_balance("user-1") == 250
    reset_entries = [entry for entry in repository.entries if entry.dedupe_key == invoice_dedupe_key("in_100")]
    assert len(reset_entries) == 1
    assert reset_entries[0].change == 293
    assert reset_entries[0].metadata["invoiceId"] == "in_100"


def test_reset_for_invoice_requires_invoice_id(ledger_components):
    _, _, ledger = ledger_components
    with pytest.raises(ValueError):
        ledger.reset_for_invoice("user-1", "", PlanKey.TIER1)


def test_history_is_newest_first_and_limited(ledger_components):
    _, _, ledger = ledger_components
    for amount in (1, 2, 3):
        ledger.adjust("user-1", amount, LedgerReason.PURCHASE)

    history = ledger.history("user-1", limit=2)

    assert [entry.change for entry in history] == [3, 2]
    with pytest.raises(ValueError):
        ledger.history("user-1", limit=0)


def test_reset_with_next_schedule_claims_due_cycle(ledger_components):
    subscriptions, _, ledger = ledger_components
    _seed_annual(subscriptions)
    ledger.adjust("user-1", 12, LedgerReason.PURCHASE)

    result = ledger.reset_with_next_schedule("user-1", PlanKey.TIER2)

    assert result.success
    assert result.balance == 300
    assert result.next_reset_at == datetime(2025, 4, 1, 12, 0, tzinfo=timezone.utc)
    stored = subscriptions.get("user-1")
    assert stored.last_token_reset_at == NOW
    assert stored.next_token_reset_at == result.next_reset_at


def test_reset_with_next_schedule_reports_claim_when_not_due(ledger_components):
    subscriptions, repository, ledger = ledger_components
    _seed_annual(subscriptions, next_reset_at=NOW + timedelta(days=3))

    result = ledger.reset_with_next_schedule("user-1", PlanKey.TIER2)

    assert not result.success
    assert result.already_claimed
    assert repository.entries == []


def test_concurrent_claims_reset_exactly_once(ledger_components):
    subscriptions, repository, ledger = ledger_components
    _seed_annual(subscriptions)
    barrier = Barrier(2)
    results = []

    def claim() -> None:
        barrier.wait()
        results.append(ledger.reset_with_next_schedule("user-1", PlanKey.TIER2))

    threads = [Thread(target=claim) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(result.success for result in results) == [False, True]
    assert sum(1 for result in results if result.already_claimed) == 1
    assert len(repository.entries) == 1
    assert ledger.get_balance("user-1") == 300
