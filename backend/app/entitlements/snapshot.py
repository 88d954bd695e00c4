"""Materialized entitlement snapshots: rebuild, self-heal and atomic consumption."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol, Set

from .catalog import (
    CRITICAL_FEATURES,
    build_feature_map,
    canonical_feature_key,
    rights_match_catalog,
)
from .models import (
    EntitlementSnapshot,
    FeatureRights,
    PlanKey,
    RebuildStatus,
    SubscriptionRecord,
)
from .usage import UsageCounter

logger = logging.getLogger("entitlements")


class SnapshotRebuildFailed(RuntimeError):
    """Raised after a rebuild failed and the snapshot was marked ``failed``."""

    def __init__(self, user_id: str, plan: Optional[PlanKey] = None) -> None:
        self.user_id = user_id
        self.plan = plan
        plan_label = plan.value if plan else "unknown"
        super().__init__(f"Entitlement rebuild failed for user={user_id} plan={plan_label}")


class SubscriptionReader(Protocol):
    """Read access to the subscription record of a user."""

    async def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        ...


class SnapshotRepository(Protocol):
    """Storage for entitlement snapshots.

    ``save_snapshot`` assigns the stored version itself: with an
    ``expected_version`` it only writes when the stored version still matches
    and returns ``None`` otherwise. ``decrement_feature`` must take one unit
    from a finite quota in a single conditional write and return ``None`` when
    nothing was left to take.
    """

    async def get_snapshot(self, user_id: str) -> Optional[EntitlementSnapshot]:
        ...

    async def set_rebuild_status(self, user_id: str, status: RebuildStatus) -> None:
        ...

    async def save_snapshot(
        self,
        snapshot: EntitlementSnapshot,
        *,
        expected_version: Optional[int],
    ) -> Optional[EntitlementSnapshot]:
        ...

    async def decrement_feature(self, user_id: str, feature: str) -> Optional[FeatureRights]:
        ...


class EntitlementSnapshotManager:
    """Builds and repairs per-user entitlement snapshots."""

    def __init__(
        self,
        repository: SnapshotRepository,
        subscriptions: SubscriptionReader,
        usage: UsageCounter,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        stale_rebuild_seconds: int = 120,
        max_attempts: int = 3,
    ) -> None:
        self._repository = repository
        self._subscriptions = subscriptions
        self._usage = usage
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stale_after = timedelta(seconds=max(1, stale_rebuild_seconds))
        self._max_attempts = max(1, max_attempts)

    async def rebuild(self, user_id: str) -> EntitlementSnapshot:
        """Recompute the snapshot from the catalog, subscription and usage counters."""

        plan: Optional[PlanKey] = None
        try:
            await self._repository.set_rebuild_status(user_id, RebuildStatus.RUNNING)
            current = await self._repository.get_snapshot(user_id)
            expected_version = current.version if current else None

            snapshot: Optional[EntitlementSnapshot] = None
            for attempt in range(1, self._max_attempts + 1):
                snapshot = await self._compute(user_id)
                plan = snapshot.plan
                saved = await self._repository.save_snapshot(snapshot, expected_version=expected_version)
                if saved is not None:
                    logger.info(
                        "Rebuilt entitlements user=%s plan=%s version=%s attempt=%s",
                        user_id,
                        saved.plan.value,
                        saved.version,
                        attempt,
                    )
                    return saved
                latest = await self._repository.get_snapshot(user_id)
                expected_version = latest.version if latest else None
                logger.info(
                    "Entitlement snapshot version moved during rebuild user=%s attempt=%s",
                    user_id,
                    attempt,
                )

            logger.warning(
                "Entitlement rebuild kept conflicting user=%s attempts=%s, writing last computation",
                user_id,
                self._max_attempts,
            )
            saved = await self._repository.save_snapshot(snapshot, expected_version=None)
            if saved is None:
                raise RuntimeError("unconditional snapshot write returned no row")
            return saved
        except Exception as exc:
            logger.exception(
                "Entitlement rebuild failed user=%s plan=%s",
                user_id,
                plan.value if plan else "unknown",
            )
            try:
                await self._repository.set_rebuild_status(user_id, RebuildStatus.FAILED)
            except Exception:
                logger.exception("Could not mark entitlement snapshot as failed user=%s", user_id)
            raise SnapshotRebuildFailed(user_id, plan) from exc

    async def get(self, user_id: str) -> EntitlementSnapshot:
        """Return a usable snapshot, rebuilding it when missing, expired or stale."""

        snapshot = await self._repository.get_snapshot(user_id)
        if snapshot is None:
            logger.info("No entitlement snapshot for user=%s, building", user_id)
            return await self.rebuild(user_id)

        now = self._clock()
        if snapshot.rebuild_status == RebuildStatus.RUNNING and self._is_stuck(snapshot, now):
            logger.warning("Entitlement rebuild stuck in running user=%s, rebuilding", user_id)
            return await self.rebuild(user_id)
        if self._cycle_ended(snapshot, now):
            logger.info(
                "Billing cycle ended for user=%s at %s, rebuilding",
                user_id,
                snapshot.billing_cycle_end.isoformat(),
            )
            return await self.rebuild(user_id)
        if snapshot.rebuild_status == RebuildStatus.IDLE and not self._matches_catalog(snapshot):
            logger.warning(
                "Entitlement limits diverged from catalog user=%s plan=%s, rebuilding",
                user_id,
                snapshot.plan.value,
            )
            return await self.rebuild(user_id)
        return snapshot

    async def consume(self, user_id: str, feature: str) -> bool:
        """Take one unit of plan quota for ``feature``; no credit fallback."""

        snapshot = await self.get(user_id)
        key = canonical_feature_key(feature)
        rights = snapshot.feature(key)
        if rights is None or not rights.enabled:
            return False
        if rights.unlimited:
            return True
        if rights.credit_only or rights.remaining <= 0:
            return False
        return await self.decrement(user_id, key) is not None

    async def decrement(self, user_id: str, feature: str) -> Optional[FeatureRights]:
        return await self._repository.decrement_feature(user_id, feature)

    async def _compute(self, user_id: str) -> EntitlementSnapshot:
        subscription = await self._subscriptions.get_subscription(user_id)
        now = self._clock()
        plan = subscription.effective_plan(now) if subscription else PlanKey.FREE
        cycle_start, cycle_end = self._usage.billing_period(subscription)
        if plan != PlanKey.FREE and subscription.entitlement_expires_at is not None:
            cycle_end = min(cycle_end, subscription.entitlement_expires_at)
        usage = await self._usage.current_usage(user_id, cycle_start)
        return EntitlementSnapshot(
            user_id=user_id,
            plan=plan,
            features=build_feature_map(plan, usage),
            billing_cycle_start=cycle_start,
            billing_cycle_end=cycle_end,
            rebuild_status=RebuildStatus.IDLE,
            last_rebuilt_at=now,
            updated_at=now,
        )

    def _matches_catalog(self, snapshot: EntitlementSnapshot) -> bool:
        return all(
            rights_match_catalog(snapshot.plan, feature, snapshot.feature(feature))
            for feature in CRITICAL_FEATURES
        )

    def _is_stuck(self, snapshot: EntitlementSnapshot, now: datetime) -> bool:
        return now - snapshot.updated_at > self._stale_after

    def _cycle_ended(self, snapshot: EntitlementSnapshot, now: datetime) -> bool:
        # A paid cycle end doubles as the entitlement expiry, so access stops at it.
        if snapshot.plan != PlanKey.FREE:
            return now >= snapshot.billing_cycle_end
        return now > snapshot.billing_cycle_end


class BackgroundSnapshotRebuilder:
    """Schedules non-blocking snapshot rebuilds on the running event loop."""

    def __init__(self, manager: EntitlementSnapshotManager) -> None:
        self._manager = manager
        self._tasks: Set[asyncio.Task] = set()

    def schedule_rebuild(self, user_id: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run(user_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every rebuild scheduled so far."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, user_id: str) -> None:
        try:
            await self._manager.rebuild(user_id)
        except SnapshotRebuildFailed as exc:
            # Already persisted as failed; the next read retries.
            logger.warning("Background entitlement rebuild failed: %s", exc)


__all__ = [
    "BackgroundSnapshotRebuilder",
    "EntitlementSnapshotManager",
    "SnapshotRebuildFailed",
    "SnapshotRepository",
    "SubscriptionReader",
]
