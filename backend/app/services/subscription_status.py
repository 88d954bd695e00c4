"""Read-only subscription overview that degrades instead of failing."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..billing import CreditLedger
from ..entitlements import PlanKey, SubscriptionRecord, UsageCounter, get_plan_limits
from ..entitlements.snapshot import SubscriptionReader

logger = logging.getLogger("entitlements")

STATUS_ACTIVE = "active"
STATUS_INACTIVE = "inactive"
STATUS_UNKNOWN = "unknown"

SOURCE_DATABASE = "database"
SOURCE_FALLBACK = "fallback"
SOURCE_FALLBACK_TIMEOUT = "fallback_timeout"
SOURCE_FALLBACK_ERROR = "fallback_error"

_UNAVAILABLE = object()


class SubscriptionOverview(BaseModel):
    """What the account page shows: plan, limits, current usage and credits."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    status: str
    plan: PlanKey
    limits: Dict[str, Union[bool, int]]
    usage: Dict[str, int] = Field(default_factory=dict)
    credit_balance: int = 0
    source: str = SOURCE_DATABASE
    degraded: List[str] = Field(default_factory=list)
    generated_at: datetime
    subscription: Optional[SubscriptionRecord] = None


async def _guarded(
    name: str,
    user_id: str,
    awaitable: Awaitable[object],
    timeout: float,
) -> object:
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Status dependency %s timed out after %.1fs user=%s", name, timeout, user_id)
    except Exception:
        logger.exception("Status dependency %s failed user=%s", name, user_id)
    return _UNAVAILABLE


async def _cycle_usage(
    user_id: str,
    subscriptions: SubscriptionReader,
    usage: UsageCounter,
) -> Dict[str, int]:
    subscription = await subscriptions.get_subscription(user_id)
    period_start, _ = usage.billing_period(subscription)
    return await usage.current_usage(user_id, period_start)


def _fallback_overview(user_id: str, source: str, now: datetime) -> SubscriptionOverview:
    return SubscriptionOverview(
        user_id=user_id,
        status=STATUS_UNKNOWN,
        plan=PlanKey.FREE,
        limits=get_plan_limits(PlanKey.FREE),
        source=source,
        degraded=["subscription", "usage", "credits"],
        generated_at=now,
    )


async def build_subscription_overview(
    user_id: str,
    *,
    subscriptions: SubscriptionReader,
    usage: UsageCounter,
    ledger: CreditLedger,
    dependency_timeout: float = 15.0,
    total_timeout: float = 30.0,
    clock: Optional[Callable[[], datetime]] = None,
) -> SubscriptionOverview:
    """Aggregate subscription, usage and credit balance for ``user_id``.

    The three reads run concurrently, each bounded by ``dependency_timeout``;
    one that times out or fails falls back to a safe default (status
    ``unknown``, empty usage, zero credits). The whole aggregation is bounded
    by ``total_timeout``. This function never raises for dependency failures.
    """

    now_fn = clock or (lambda: datetime.now(timezone.utc))
    gathered = asyncio.gather(
        _guarded("subscription", user_id, subscriptions.get_subscription(user_id), dependency_timeout),
        _guarded("usage", user_id, _cycle_usage(user_id, subscriptions, usage), dependency_timeout),
        _guarded("credits", user_id, ledger.get_balance(user_id), dependency_timeout),
    )
    try:
        subscription_result, usage_result, credit_result = await asyncio.wait_for(
            gathered, timeout=total_timeout
        )
    except asyncio.TimeoutError:
        logger.error("Subscription overview hit hard deadline %.1fs user=%s", total_timeout, user_id)
        return _fallback_overview(user_id, SOURCE_FALLBACK_TIMEOUT, now_fn())
    except Exception:
        logger.exception("Subscription overview failed user=%s", user_id)
        return _fallback_overview(user_id, SOURCE_FALLBACK_ERROR, now_fn())

    now = now_fn()
    degraded: List[str] = []

    subscription: Optional[SubscriptionRecord] = None
    plan = PlanKey.FREE
    if subscription_result is _UNAVAILABLE:
        degraded.append("subscription")
        status = STATUS_UNKNOWN
    else:
        subscription = subscription_result  # type: ignore[assignment]
        if subscription is None:
            status = STATUS_INACTIVE
        else:
            plan = subscription.effective_plan(now)
            active = subscription.is_active or plan != PlanKey.FREE
            status = STATUS_ACTIVE if active else STATUS_INACTIVE

    if usage_result is _UNAVAILABLE:
        degraded.append("usage")
        usage_counts: Dict[str, int] = {}
    else:
        usage_counts = dict(usage_result)  # type: ignore[call-overload]

    if credit_result is _UNAVAILABLE:
        degraded.append("credits")
        credit_balance = 0
    else:
        credit_balance = int(credit_result)  # type: ignore[call-overload]

    return SubscriptionOverview(
        user_id=user_id,
        status=status,
        plan=plan,
        limits=get_plan_limits(plan),
        usage=usage_counts,
        credit_balance=credit_balance,
        source=SOURCE_FALLBACK if "subscription" in degraded else SOURCE_DATABASE,
        degraded=degraded,
        generated_at=now,
        subscription=subscription,
    )


__all__ = [
    "SOURCE_DATABASE",
    "SOURCE_FALLBACK",
    "SOURCE_FALLBACK_ERROR",
    "SOURCE_FALLBACK_TIMEOUT",
    "STATUS_ACTIVE",
    "STATUS_INACTIVE",
    "STATUS_UNKNOWN",
    "SubscriptionOverview",
    "build_subscription_overview",
]
