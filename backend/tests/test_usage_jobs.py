from __future__ import annotations

from datetime import datetime, timezone

import pytest

from backend import usage_jobs
from backend.app.entitlements import UsageCounter


@pytest.fixture(autouse=True)
def reset_metrics():
    usage_jobs._reset_metrics_for_testing()
    yield
    usage_jobs._reset_metrics_for_testing()


def _month(year: int, month: int):
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    end = datetime(year, month, 28, 23, 59, tzinfo=timezone.utc)
    return start, end


class FailingUsageRepository:
    async def delete_usage_before(self, cutoff: datetime) -> int:
        raise RuntimeError("database unavailable")


def test_retention_cutoff_keeps_current_month_and_history() -> None:
    now = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

    assert usage_jobs.usage_retention_cutoff(now, 6) == datetime(2024, 10, 1, tzinfo=timezone.utc)
    assert usage_jobs.usage_retention_cutoff(now, 1) == datetime(2025, 3, 1, tzinfo=timezone.utc)
    assert usage_jobs.usage_retention_cutoff(now, 0) == datetime(2025, 3, 1, tzinfo=timezone.utc)


def test_seconds_until_next_month() -> None:
    now = datetime(2025, 12, 31, 23, 0, tzinfo=timezone.utc)

    assert usage_jobs._seconds_until_next_month(now) == 4 * 3600


@pytest.mark.asyncio
async def test_cleanup_removes_rows_older_than_retention(usage_counter: UsageCounter, usage_repo, clock) -> None:
    for year, month in [(2024, 8), (2024, 9), (2024, 10), (2025, 3)]:
        start, end = _month(year, month)
        await usage_counter.record("u1", "scans_per_month", period_start=start, period_end=end)

    summary = await usage_jobs.run_usage_cleanup_job(clock(), counter=usage_counter, retention_months=6)

    assert summary.rows_deleted == 2
    assert summary.cutoff == datetime(2024, 10, 1, tzinfo=timezone.utc)
    assert sorted(start.month for (_, _, start) in usage_repo.rows) == [3, 10]

    metrics = usage_jobs.get_usage_job_metrics()
    assert metrics["runs"] == 1
    assert metrics["rows_deleted"] == 2
    assert metrics["last_cutoff"] == "2024-10-01T00:00:00+00:00"
    assert metrics["last_error"] is None


@pytest.mark.asyncio
async def test_cleanup_failure_is_recorded_and_raised(clock) -> None:
    counter = UsageCounter(FailingUsageRepository(), clock=clock)

    with pytest.raises(RuntimeError):
        await usage_jobs.run_usage_cleanup_job(clock(), counter=counter, retention_months=3)

    metrics = usage_jobs.get_usage_job_metrics()
    assert metrics["failures"] == 1
    assert metrics["last_error"] == "RuntimeError: database unavailable"
    assert metrics["last_success_at"] is None
