"""Scheduler integration for the daily annual token reset sweep."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from backend.app.billing import ReconciliationSummary
from backend.app.services.billing import get_billing_config, get_reconciliation_sweeper

logger = logging.getLogger("billing.scheduler")

_scheduler_lock = Lock()
_worker: Optional["_ReconciliationWorker"] = None

_RECONCILIATION_METRICS: Dict[str, object] = {
    "runs": 0,
    "succeeded": 0,
    "failed": 0,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _RECONCILIATION_METRICS["runs"] = int(_RECONCILIATION_METRICS["runs"]) + 1
        _RECONCILIATION_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, summary: ReconciliationSummary) -> None:
    with _metrics_lock:
        metrics = _RECONCILIATION_METRICS
        metrics["succeeded"] = int(metrics["succeeded"]) + summary.succeeded
        metrics["failed"] = int(metrics["failed"]) + summary.failed
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = summary.errors[-1].error if summary.errors else None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _RECONCILIATION_METRICS["failed"] = int(_RECONCILIATION_METRICS["failed"]) + 1
        _RECONCILIATION_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def run_reconciliation_job(*, now: Optional[datetime] = None) -> ReconciliationSummary:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    _record_run_start(current_time)
    try:
        summary = get_reconciliation_sweeper().run(now=current_time)
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception("Token reset job failed")
        raise
    _record_run_success(current_time, summary)
    logger.info(
        "Token reset job completed",
        extra={
            "processed": summary.processed,
            "succeeded": summary.succeeded,
            "failed": summary.failed,
            "skipped": summary.skipped,
        },
    )
    return summary


class _ReconciliationWorker(Thread):
    def __init__(self, *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name="token-reset-scheduler")
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop = Event()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop.wait(self._initial_delay):
            return
        while not self._stop.is_set():
            try:
                run_reconciliation_job()
            except Exception:
                # Logged inside run_reconciliation_job; keep the schedule alive.
                pass
            if self._stop.wait(self._interval):
                break


def _seconds_until(hour: int, minute: int = 0, *, now: Optional[datetime] = None) -> float:
    current = now or datetime.now(timezone.utc)
    target = current.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= current:
        target += timedelta(days=1)
    return max((target - current).total_seconds(), 0.0)


def start_reconciliation_scheduler() -> bool:
    """Start the daily sweep thread when enabled; returns whether a worker is running."""

    global _worker
    config = get_billing_config()
    if not config.scheduler_enabled:
        logger.info("Token reset scheduler disabled")
        return False
    with _scheduler_lock:
        if _worker is not None:
            return True
        delay = _seconds_until(config.scheduler_hour_utc)
        _worker = _ReconciliationWorker(initial_delay=delay, interval=24 * 60 * 60)
        _worker.start()
        logger.info(
            "Token reset scheduler started",
            extra={"initial_delay_seconds": round(delay, 2), "hour_utc": config.scheduler_hour_utc},
        )
        return True


def shutdown_reconciliation_scheduler() -> None:
    global _worker
    with _scheduler_lock:
        if _worker is None:
            return
        _worker.stop()
        _worker.join(timeout=1.0)
        _worker = None
        logger.info("Token reset scheduler stopped")


def get_reconciliation_metrics() -> Dict[str, object]:
    with _metrics_lock:
        metrics = dict(_RECONCILIATION_METRICS)
    for key in ("last_run_at", "last_success_at"):
        value = metrics.get(key)
        metrics[key] = value.isoformat() if value else None
    return metrics


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _RECONCILIATION_METRICS.update(
            {
                "runs": 0,
                "succeeded": 0,
                "failed": 0,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "get_reconciliation_metrics",
    "run_reconciliation_job",
    "shutdown_reconciliation_scheduler",
    "start_reconciliation_scheduler",
]
