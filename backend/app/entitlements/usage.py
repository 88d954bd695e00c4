"""Per-period usage counters backing snapshot rebuilds and the usage audit trail."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol, Sequence, Tuple

from .models import SubscriptionRecord, UsageRecord


class UsageRepository(Protocol):
    """Storage for monotonic usage counters."""

    async def increment_usage(
        self,
        user_id: str,
        feature: str,
        *,
        period_start: datetime,
        period_end: datetime,
        amount: int = 1,
    ) -> int:
        ...

    async def get_usage_counts(self, user_id: str, *, period_start: datetime) -> Dict[str, int]:
        ...

    async def list_usage(self, user_id: str, *, since: datetime) -> Sequence[UsageRecord]:
        ...

    async def delete_usage_before(self, cutoff: datetime) -> int:
        ...


def calendar_month_window(now: datetime) -> Tuple[datetime, datetime]:
    """Return the UTC calendar month containing ``now`` as an inclusive window."""

    now = now.astimezone(timezone.utc)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        next_start = start.replace(year=start.year + 1, month=1)
    else:
        next_start = start.replace(month=start.month + 1)
    return start, next_start - timedelta(microseconds=1)


def months_before(moment: datetime, months: int) -> datetime:
    """Return the first instant of the month ``months`` calendar months before ``moment``."""

    start, _ = calendar_month_window(moment)
    year, month = start.year, start.month - months
    while month < 1:
        month += 12
        year -= 1
    return start.replace(year=year, month=month)


def resolve_billing_period(
    subscription: Optional[SubscriptionRecord], now: datetime
) -> Tuple[datetime, datetime]:
    """Return the billing window used for usage accounting.

    The subscription's own cycle is used while it is paid, current and
    contains ``now``; every other case falls back to the calendar month.
    """

    if (
        subscription is not None
        and subscription.current_period_start is not None
        and subscription.current_period_end is not None
        and subscription.is_paid_active(now)
        and subscription.current_period_start <= now < subscription.current_period_end
    ):
        return subscription.current_period_start, subscription.current_period_end
    return calendar_month_window(now)


class UsageCounter:
    """Records consumption against plan quotas, one row per feature and period."""

    def __init__(
        self,
        repository: UsageRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def billing_period(self, subscription: Optional[SubscriptionRecord]) -> Tuple[datetime, datetime]:
        return resolve_billing_period(subscription, self._clock())

    async def record(
        self,
        user_id: str,
        feature: str,
        *,
        period_start: datetime,
        period_end: datetime,
        amount: int = 1,
    ) -> int:
        if amount < 1:
            raise ValueError("amount must be >= 1")
        return await self._repository.increment_usage(
            user_id,
            feature,
            period_start=period_start,
            period_end=period_end,
            amount=amount,
        )

    async def current_usage(self, user_id: str, period_start: datetime) -> Dict[str, int]:
        """Return usage per feature for periods starting at or after ``period_start``."""

        return await self._repository.get_usage_counts(user_id, period_start=period_start)

    async def history(self, user_id: str, *, months: int = 6) -> Sequence[UsageRecord]:
        months = max(1, min(months, 24))
        since = months_before(self._clock(), months - 1)
        return await self._repository.list_usage(user_id, since=since)

    async def purge_before(self, cutoff: datetime) -> int:
        return await self._repository.delete_usage_before(cutoff)


__all__ = [
    "UsageCounter",
    "UsageRepository",
    "calendar_month_window",
    "months_before",
    "resolve_billing_period",
]
