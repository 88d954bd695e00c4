"""The entitlement gate every billable action passes through."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Mapping, Optional, Protocol, Sequence, Tuple

from ..billing.credits import CreditLedger, InsufficientCredits
from ..feature_gates.exceptions import (
    FEATURE_NOT_ON_PLAN,
    PLAN_LIMIT_REACHED,
    FeatureNotOnPlanError,
    InsufficientCreditsError,
    PlanLimitReachedError,
)
from .catalog import canonical_feature_key, get_plan_limits
from .models import (
    ConsumptionDecision,
    ConsumptionSource,
    EligibilityResult,
    EntitlementSnapshot,
    FeatureRights,
    PlanKey,
    RebuildStatus,
    SubscriptionRecord,
)
from .snapshot import EntitlementSnapshotManager, SnapshotRebuildFailed, SubscriptionReader
from .usage import UsageCounter

logger = logging.getLogger("entitlements")

ENTITLEMENTS_UNAVAILABLE = "entitlements_unavailable"


class CreditPreferenceRepository(Protocol):
    """Per-user preference controlling automatic credit spending."""

    async def get_auto_use_credits(self, user_id: str) -> bool:
        ...

    async def set_auto_use_credits(self, user_id: str, enabled: bool) -> bool:
        ...


class UsageNotifier(Protocol):
    """Receives quota threshold crossings for user-facing nudges."""

    def notify_usage_threshold(
        self,
        user_id: str,
        feature: str,
        *,
        used: int,
        limit: int,
        threshold: float,
    ) -> None:
        ...


class EntitlementEngine:
    """Decides ALLOW from plan, ALLOW from credits or DENY, and charges accordingly."""

    def __init__(
        self,
        snapshots: EntitlementSnapshotManager,
        subscriptions: SubscriptionReader,
        ledger: CreditLedger,
        usage: UsageCounter,
        preferences: CreditPreferenceRepository,
        *,
        notifier: Optional[UsageNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        subscription_check_timeout: float = 2.0,
        warning_thresholds: Sequence[float] = (0.8, 0.9),
    ) -> None:
        self._snapshots = snapshots
        self._subscriptions = subscriptions
        self._ledger = ledger
        self._usage = usage
        self._preferences = preferences
        self._notifier = notifier
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._subscription_check_timeout = subscription_check_timeout
        self._warning_thresholds: Tuple[float, ...] = tuple(sorted(warning_thresholds))

    async def assert_can_use(
        self,
        user_id: str,
        feature: str,
        metadata: Optional[Mapping[str, object]] = None,
    ) -> ConsumptionDecision:
        """Charge one use of ``feature`` or raise a :class:`FeatureGateError`.

        The charge happens here, before the caller does the work. Nothing is
        refunded automatically if that work later fails.
        """

        key = canonical_feature_key(feature)
        subscription: Optional[SubscriptionRecord] = None
        subscription_checked = False

        try:
            snapshot = await self._snapshots.get(user_id)
        except SnapshotRebuildFailed:
            subscription = await self._check_subscription(user_id)
            if subscription is not None and subscription.is_paid_active(self._clock()):
                return self._optimistic_allow(user_id, key, subscription, RebuildStatus.FAILED)
            raise

        if snapshot.is_unstable:
            subscription = await self._check_subscription(user_id)
            subscription_checked = True
            if subscription is not None and subscription.is_paid_active(self._clock()):
                return self._optimistic_allow(user_id, key, subscription, snapshot.rebuild_status)
            if snapshot.rebuild_status == RebuildStatus.FAILED:
                snapshot = await self._snapshots.rebuild(user_id)

        if not subscription_checked:
            subscription = await self._check_subscription(user_id)
        snapshot = await self._heal_plan_divergence(user_id, snapshot, subscription)

        rights = snapshot.feature(key)
        if rights is None and key in get_plan_limits(snapshot.plan):
            logger.warning(
                "Feature %s missing from snapshot user=%s plan=%s, rebuilding",
                key,
                user_id,
                snapshot.plan.value,
            )
            snapshot = await self._snapshots.rebuild(user_id)
            rights = snapshot.feature(key)

        if rights is None or not rights.enabled:
            logger.info("Denied %s for user=%s: not on plan %s", key, user_id, snapshot.plan.value)
            raise FeatureNotOnPlanError(key, snapshot.plan.value)

        if rights.unlimited:
            await self._record_usage(user_id, key, snapshot)
            logger.info("Allowed %s for user=%s from unlimited plan %s", key, user_id, snapshot.plan.value)
            return ConsumptionDecision(
                user_id=user_id,
                feature=key,
                source=ConsumptionSource.PLAN,
                plan=snapshot.plan,
                remaining=None,
                unlimited=True,
            )

        if rights.has_quota:
            updated = await self._snapshots.decrement(user_id, key)
            if updated is not None:
                await self._record_usage(user_id, key, snapshot)
                self._maybe_warn(user_id, key, updated)
                logger.info(
                    "Allowed %s for user=%s from plan %s remaining=%s",
                    key,
                    user_id,
                    snapshot.plan.value,
                    updated.remaining,
                )
                return ConsumptionDecision(
                    user_id=user_id,
                    feature=key,
                    source=ConsumptionSource.PLAN,
                    plan=snapshot.plan,
                    remaining=updated.remaining,
                )
            logger.info("Plan quota for %s taken concurrently user=%s", key, user_id)

        return await self._charge_credits(user_id, key, snapshot.plan, metadata)

    async def check_eligibility(self, user_id: str, feature: str) -> EligibilityResult:
        """Preview the plan gate without charging or falling back to credits."""

        key = canonical_feature_key(feature)
        try:
            snapshot = await self._snapshots.get(user_id)
        except SnapshotRebuildFailed:
            subscription = await self._check_subscription(user_id)
            if subscription is not None and subscription.is_paid_active(self._clock()):
                return EligibilityResult(feature=key, allowed=True)
            return EligibilityResult(feature=key, allowed=False, remaining=0, reason=ENTITLEMENTS_UNAVAILABLE)
        rights = snapshot.feature(key)
        if rights is None or not rights.enabled:
            return EligibilityResult(feature=key, allowed=False, remaining=0, reason=FEATURE_NOT_ON_PLAN)
        if rights.unlimited:
            return EligibilityResult(feature=key, allowed=True, unlimited=True)
        if rights.has_quota:
            return EligibilityResult(feature=key, allowed=True, remaining=rights.remaining)
        return EligibilityResult(feature=key, allowed=False, remaining=0, reason=PLAN_LIMIT_REACHED)

    async def get_snapshot(self, user_id: str) -> EntitlementSnapshot:
        return await self._snapshots.get(user_id)

    async def _charge_credits(
        self,
        user_id: str,
        key: str,
        plan: PlanKey,
        metadata: Optional[Mapping[str, object]],
    ) -> ConsumptionDecision:
        if not await self._preferences.get_auto_use_credits(user_id):
            logger.info("Denied %s for user=%s: quota exhausted and auto-use disabled", key, user_id)
            raise PlanLimitReachedError(key, plan.value, auto_use_disabled=True)

        cost = self._ledger.calculate_cost(key, metadata)
        if cost <= 0:
            logger.info("Denied %s for user=%s: quota exhausted and no credit price", key, user_id)
            raise PlanLimitReachedError(key, plan.value)

        try:
            balance = await self._ledger.deduct_credits(
                user_id,
                cost,
                description=f"{key} usage",
            )
        except InsufficientCredits as exc:
            logger.info(
                "Denied %s for user=%s: needs %s credits, has %s",
                key,
                user_id,
                exc.required,
                exc.balance,
            )
            raise InsufficientCreditsError(
                key, plan.value, required=exc.required, balance=exc.balance
            ) from exc

        logger.info(
            "Allowed %s for user=%s from credits cost=%s balance=%s",
            key,
            user_id,
            cost,
            balance.balance,
        )
        return ConsumptionDecision(
            user_id=user_id,
            feature=key,
            source=ConsumptionSource.CREDIT,
            plan=plan,
            remaining=0,
            credits_charged=cost,
            credit_balance=balance.balance,
        )

    async def _check_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        try:
            return await asyncio.wait_for(
                self._subscriptions.get_subscription(user_id),
                timeout=self._subscription_check_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Subscription check timed out user=%s", user_id)
        except Exception:
            logger.exception("Subscription check failed user=%s", user_id)
        return None

    async def _heal_plan_divergence(
        self,
        user_id: str,
        snapshot: EntitlementSnapshot,
        subscription: Optional[SubscriptionRecord],
    ) -> EntitlementSnapshot:
        if subscription is None:
            return snapshot
        if subscription.is_paid_active(self._clock()) and snapshot.plan == PlanKey.FREE:
            logger.warning(
                "Snapshot shows free but subscription is %s user=%s, rebuilding",
                subscription.plan_key.value,
                user_id,
            )
            return await self._snapshots.rebuild(user_id)
        return snapshot

    def _optimistic_allow(
        self,
        user_id: str,
        key: str,
        subscription: SubscriptionRecord,
        rebuild_status: RebuildStatus,
    ) -> ConsumptionDecision:
        logger.warning(
            "Optimistic allow of %s for user=%s plan=%s while snapshot is %s",
            key,
            user_id,
            subscription.plan_key.value,
            rebuild_status.value,
        )
        return ConsumptionDecision(
            user_id=user_id,
            feature=key,
            source=ConsumptionSource.PLAN,
            plan=subscription.plan_key,
            optimistic=True,
        )

    async def _record_usage(self, user_id: str, key: str, snapshot: EntitlementSnapshot) -> None:
        await self._usage.record(
            user_id,
            key,
            period_start=snapshot.billing_cycle_start,
            period_end=snapshot.billing_cycle_end,
        )

    def _maybe_warn(self, user_id: str, key: str, rights: FeatureRights) -> None:
        if self._notifier is None or rights.limit <= 0:
            return
        fraction = rights.used / rights.limit
        previous = (rights.used - 1) / rights.limit
        crossed = [t for t in (*self._warning_thresholds, 1.0) if previous < t <= fraction]
        if crossed:
            self._notifier.notify_usage_threshold(
                user_id,
                key,
                used=rights.used,
                limit=rights.limit,
                threshold=max(crossed),
            )


__all__ = [
    "CreditPreferenceRepository",
    "ENTITLEMENTS_UNAVAILABLE",
    "EntitlementEngine",
    "UsageNotifier",
]
