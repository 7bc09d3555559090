from datetime import datetime, timezone

import pytest

from backend import reconciliation
from backend.app.billing import ReconciliationError, ReconciliationSummary, load_billing_config


class FakeSweeper:
    def __init__(self, summary=None, error=None):
        self.summary = summary
        self.error = error
        self.calls = []

    def run(self, now=None):
        self.calls.append(now)
        if self.error:
            raise self.error
        return self.summary


def test_run_reconciliation_job_updates_metrics(monkeypatch):
    reconciliation._reset_metrics_for_testing()
    run_time = datetime(2024, 8, 1, 3, tzinfo=timezone.utc)
    summary = ReconciliationSummary(
        processed=4,
        succeeded=3,
        failed=1,
        errors=[ReconciliationError(user_id="user-9", error="boom")],
        started_at=run_time,
    )
    sweeper = FakeSweeper(summary=summary)
    monkeypatch.setattr(reconciliation, "get_reconciliation_sweeper", lambda: sweeper)

    result = reconciliation.run_reconciliation_job(now=run_time)

    assert result == summary
    assert sweeper.calls == [run_time]
    metrics = reconciliation.get_reconciliation_metrics()
    assert metrics["runs"] == 1
    assert metrics["succeeded"] == 3
    assert metrics["failed"] == 1
    assert metrics["last_run_at"] == run_time.isoformat()
    assert metrics["last_success_at"] == run_time.isoformat()
    assert metrics["last_error"] == "boom"


def test_run_reconciliation_job_records_failure(monkeypatch):
    reconciliation._reset_metrics_for_testing()
    monkeypatch.setattr(
        reconciliation,
        "get_reconciliation_sweeper",
        lambda: FakeSweeper(error=RuntimeError("database down")),
    )

    with pytest.raises(RuntimeError):
        reconciliation.run_reconciliation_job(now=datetime(2024, 8, 2, 3, tzinfo=timezone.utc))

    metrics = reconciliation.get_reconciliation_metrics()
    assert metrics["runs"] == 1
    assert metrics["failed"] == 1
    assert metrics["last_success_at"] is None
    assert metrics["last_error"] == "RuntimeError: database down"


def test_naive_run_time_is_treated_as_utc(monkeypatch):
    reconciliation._reset_metrics_for_testing()
    sweeper = FakeSweeper(summary=ReconciliationSummary())
    monkeypatch.setattr(reconciliation, "get_reconciliation_sweeper", lambda: sweeper)

    reconciliation.run_reconciliation_job(now=datetime(2024, 8, 3, 3))

    assert sweeper.calls[0].tzinfo == timezone.utc


def test_scheduler_does_not_start_when_disabled(monkeypatch):
    monkeypatch.setattr(reconciliation, "get_billing_config", lambda: load_billing_config({}))

    assert reconciliation.start_reconciliation_scheduler() is False
    reconciliation.shutdown_reconciliation_scheduler()


def test_seconds_until_rolls_over_to_next_day():
    now = datetime(2024, 8, 1, 5, 30, tzinfo=timezone.utc)

    assert reconciliation._seconds_until(6, now=now) == 30 * 60
    assert reconciliation._seconds_until(3, now=now) == 21.5 * 60 * 60
