"""Scheduler integration for usage-history retention."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Dict, Optional

from backend.app.entitlements.usage import UsageCounter, calendar_month_window, months_before
from backend.app.services.entitlements import get_entitlement_config, get_usage_counter

logger = logging.getLogger(__name__)

_scheduler_lock = Lock()
_worker: Optional["_UsageCleanupWorker"] = None

_USAGE_JOB_METRICS: Dict[str, object] = {
    "runs": 0,
    "rows_deleted": 0,
    "failures": 0,
    "last_cutoff": None,
    "last_run_at": None,
    "last_success_at": None,
    "last_error": None,
}
_metrics_lock = Lock()


@dataclass(frozen=True)
class UsageCleanupSummary:
    cutoff: datetime
    rows_deleted: int


def _record_run_start(started_at: datetime) -> None:
    with _metrics_lock:
        _USAGE_JOB_METRICS["runs"] = int(_USAGE_JOB_METRICS.get("runs", 0)) + 1
        _USAGE_JOB_METRICS["last_run_at"] = started_at


def _record_run_success(completed_at: datetime, summary: UsageCleanupSummary) -> None:
    with _metrics_lock:
        _USAGE_JOB_METRICS["rows_deleted"] = int(_USAGE_JOB_METRICS.get("rows_deleted", 0)) + summary.rows_deleted
        _USAGE_JOB_METRICS["last_cutoff"] = summary.cutoff
        _USAGE_JOB_METRICS["last_success_at"] = completed_at
        _USAGE_JOB_METRICS["last_error"] = None


def _record_run_failure(error: Exception) -> None:
    with _metrics_lock:
        _USAGE_JOB_METRICS["failures"] = int(_USAGE_JOB_METRICS.get("failures", 0)) + 1
        _USAGE_JOB_METRICS["last_error"] = f"{type(error).__name__}: {error}"


def usage_retention_cutoff(now: datetime, retention_months: int) -> datetime:
    """First instant of the oldest month still kept; rows ending earlier are purged."""

    return months_before(now, max(1, retention_months) - 1)


async def run_usage_cleanup_job(
    now: Optional[datetime] = None,
    *,
    counter: Optional[UsageCounter] = None,
    retention_months: Optional[int] = None,
) -> UsageCleanupSummary:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)
    months = retention_months or get_entitlement_config().usage_retention_months
    usage = counter or get_usage_counter()
    cutoff = usage_retention_cutoff(current_time, months)

    _record_run_start(current_time)
    try:
        deleted = await usage.purge_before(cutoff)
    except Exception as exc:
        _record_run_failure(exc)
        logger.exception(
            "Usage cleanup job failed",
            extra={"cutoff": cutoff.isoformat()},
        )
        raise

    summary = UsageCleanupSummary(cutoff=cutoff, rows_deleted=deleted)
    _record_run_success(current_time, summary)
    logger.info(
        "Usage cleanup job completed",
        extra={
            "cutoff": cutoff.isoformat(),
            "rows_deleted": deleted,
            "retention_months": months,
        },
    )
    return summary


def _first_of_next_month(now: datetime, hour: int) -> datetime:
    start, _ = calendar_month_window(now)
    if start.month == 12:
        following = start.replace(year=start.year + 1, month=1)
    else:
        following = start.replace(month=start.month + 1)
    return following.replace(hour=hour)


def _seconds_until_next_month(now: datetime, hour: int = 3) -> float:
    return max((_first_of_next_month(now, hour) - now).total_seconds(), 0.0)


class _UsageCleanupWorker(Thread):
    """Runs the cleanup job on the application's event loop once a month."""

    def __init__(self, loop: asyncio.AbstractEventLoop, *, timeout: float = 300.0):
        super().__init__(daemon=True)
        self._loop = loop
        self._timeout = timeout
        self._stop = Event()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        while not self._stop.is_set():
            delay = _seconds_until_next_month(datetime.now(timezone.utc))
            if self._stop.wait(delay):
                break
            future = asyncio.run_coroutine_threadsafe(run_usage_cleanup_job(), self._loop)
            try:
                future.result(timeout=self._timeout)
            except Exception:
                # Errors are logged inside run_usage_cleanup_job; continue schedule.
                future.cancel()


def start_usage_cleanup_scheduler(loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
    global _worker
    with _scheduler_lock:
        if _worker is not None:
            return
        target_loop = loop or asyncio.get_running_loop()
        _worker = _UsageCleanupWorker(target_loop)
        _worker.start()
        logger.info(
            "Usage cleanup scheduler started",
            extra={"initial_delay_seconds": round(_seconds_until_next_month(datetime.now(timezone.utc)), 2)},
        )


def shutdown_usage_cleanup_scheduler() -> None:
    global _worker
    with _scheduler_lock:
        if _worker is None:
            return
        _worker.stop()
        _worker.join(timeout=1.0)
        _worker = None
        logger.info("Usage cleanup scheduler stopped")


def get_usage_job_metrics() -> Dict[str, object]:
    with _metrics_lock:
        snapshot = dict(_USAGE_JOB_METRICS)
    for key in ("last_cutoff", "last_run_at", "last_success_at"):
        value = snapshot.get(key)
        snapshot[key] = value.isoformat() if isinstance(value, datetime) else None
    return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        _USAGE_JOB_METRICS.update(
            {
                "runs": 0,
                "rows_deleted": 0,
                "failures": 0,
                "last_cutoff": None,
                "last_run_at": None,
                "last_success_at": None,
                "last_error": None,
            }
        )


__all__ = [
    "UsageCleanupSummary",
    "get_usage_job_metrics",
    "run_usage_cleanup_job",
    "shutdown_usage_cleanup_scheduler",
    "start_usage_cleanup_scheduler",
    "usage_retention_cutoff",
]
