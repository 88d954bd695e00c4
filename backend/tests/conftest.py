"""In-memory collaborators shared by the entitlement and billing tests."""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Set, Tuple
from uuid import uuid4

import pytest

from backend.app.billing import (
    BillingAuditEvent,
    BillingService,
    BillingWebhookEvent,
    CreditBalance,
    CreditLedger,
    CreditTransaction,
    CreditTransactionType,
    InsufficientCredits,
    PaymentRecord,
)
from backend.app.entitlements import (
    BackgroundSnapshotRebuilder,
    EntitlementSnapshot,
    EntitlementSnapshotManager,
    FeatureRights,
    PlanKey,
    RebuildStatus,
    SubscriptionRecord,
    UsageCounter,
    UsageRecord,
)
from backend.app.entitlements.service import EntitlementEngine


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class InMemorySnapshotRepository:
    def __init__(self, clock: FixedClock) -> None:
        self._clock = clock
        self.snapshots: Dict[str, EntitlementSnapshot] = {}
        self.status_history: List[Tuple[str, RebuildStatus]] = []
        self.fail_saves = 0
        self.conflicts = 0

    async def get_snapshot(self, user_id: str) -> Optional[EntitlementSnapshot]:
        return self.snapshots.get(user_id)

    async def set_rebuild_status(self, user_id: str, status: RebuildStatus) -> None:
        self.status_history.append((user_id, status))
        now = self._clock()
        existing = self.snapshots.get(user_id)
        if existing is None:
            self.snapshots[user_id] = EntitlementSnapshot(
                user_id=user_id,
                plan=PlanKey.FREE,
                billing_cycle_start=now,
                billing_cycle_end=now,
                rebuild_status=status,
                version=0,
                updated_at=now,
            )
            return
        self.snapshots[user_id] = existing.model_copy(update={"rebuild_status": status, "updated_at": now})

    async def save_snapshot(
        self,
        snapshot: EntitlementSnapshot,
        *,
        expected_version: Optional[int],
    ) -> Optional[EntitlementSnapshot]:
        if self.fail_saves:
            self.fail_saves -= 1
            raise ConnectionError("storage unavailable")
        if self.conflicts:
            self.conflicts -= 1
            current = self.snapshots[snapshot.user_id]
            self.snapshots[snapshot.user_id] = current.model_copy(update={"version": current.version + 1})
        current = self.snapshots.get(snapshot.user_id)
        current_version = current.version if current else 0
        if expected_version is not None and current_version != expected_version:
            return None
        stored = snapshot.model_copy(
            update={
                "rebuild_status": RebuildStatus.IDLE,
                "version": current_version + 1,
                "updated_at": self._clock(),
            }
        )
        self.snapshots[snapshot.user_id] = stored
        return stored

    async def decrement_feature(self, user_id: str, feature: str) -> Optional[FeatureRights]:
        snapshot = self.snapshots.get(user_id)
        if snapshot is None:
            return None
        rights = snapshot.feature(feature)
        if rights is None or not rights.has_quota:
            return None
        updated = rights.consumed()
        self.snapshots[user_id] = snapshot.model_copy(
            update={
                "features": {**snapshot.features, feature: updated},
                "version": snapshot.version + 1,
                "updated_at": self._clock(),
            }
        )
        return updated

    def put(self, snapshot: EntitlementSnapshot) -> None:
        self.snapshots[snapshot.user_id] = snapshot


class InMemoryUsageRepository:
    def __init__(self) -> None:
        self.rows: Dict[Tuple[str, str, datetime], UsageRecord] = {}

    async def increment_usage(
        self,
        user_id: str,
        feature: str,
        *,
        period_start: datetime,
        period_end: datetime,
        amount: int = 1,
    ) -> int:
        key = (user_id, feature, period_start)
        existing = self.rows.get(key)
        count = (existing.count if existing else 0) + amount
        self.rows[key] = UsageRecord(
            user_id=user_id,
            feature=feature,
            period_start=period_start,
            period_end=period_end,
            count=count,
        )
        return count

    async def get_usage_counts(self, user_id: str, *, period_start: datetime) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for (owner, feature, start), record in self.rows.items():
            if owner == user_id and start >= period_start:
                totals[feature] = totals.get(feature, 0) + record.count
        return totals

    async def list_usage(self, user_id: str, *, since: datetime) -> Sequence[UsageRecord]:
        records = [r for r in self.rows.values() if r.user_id == user_id and r.period_start >= since]
        return sorted(records, key=lambda r: (r.period_start, r.feature), reverse=True)

    async def delete_usage_before(self, cutoff: datetime) -> int:
        stale = [key for key, record in self.rows.items() if record.period_end < cutoff]
        for key in stale:
            del self.rows[key]
        return len(stale)


class InMemoryBillingRepository:
    def __init__(self) -> None:
        self.subscriptions: Dict[str, SubscriptionRecord] = {}
        self.webhook_events: Set[str] = set()
        self.payments: List[PaymentRecord] = []
        self.read_delay: float = 0.0
        self.read_error: Optional[Exception] = None

    async def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        if self.read_error is not None:
            raise self.read_error
        return self.subscriptions.get(user_id)

    async def upsert_subscription(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        self.subscriptions[subscription.user_id] = subscription
        return subscription

    async def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        if event.event_id in self.webhook_events:
            return False
        self.webhook_events.add(event.event_id)
        return True

    async def forget_webhook_event(self, event_id: str) -> None:
        self.webhook_events.discard(event_id)

    async def record_payment(self, payment: PaymentRecord) -> PaymentRecord:
        self.payments.append(payment)
        return payment

    def put(self, subscription: SubscriptionRecord) -> None:
        self.subscriptions[subscription.user_id] = subscription


class InMemoryCreditRepository:
    def __init__(self) -> None:
        self.balances: Dict[str, CreditBalance] = {}
        self.transactions: List[CreditTransaction] = []
        self.fail_grants = 0

    async def get_balance(self, user_id: str) -> Optional[CreditBalance]:
        return self.balances.get(user_id)

    async def apply_grant(
        self,
        user_id: str,
        amount: int,
        transaction_type: CreditTransactionType,
        *,
        reference_id: Optional[str],
        description: Optional[str],
    ) -> Optional[CreditBalance]:
        if self.fail_grants:
            self.fail_grants -= 1
            raise ConnectionError("storage unavailable")
        if reference_id is not None and any(
            tx.reference_id == reference_id and tx.type == transaction_type for tx in self.transactions
        ):
            return None
        self._append(user_id, amount, transaction_type, reference_id, description)
        current = self.balances.get(user_id) or CreditBalance(user_id=user_id)
        updated = current.model_copy(
            update={
                "balance": current.balance + amount,
                "lifetime_purchased": current.lifetime_purchased + amount,
            }
        )
        self.balances[user_id] = updated
        return updated

    async def apply_deduction(
        self,
        user_id: str,
        amount: int,
        *,
        reference_id: Optional[str],
        description: Optional[str],
    ) -> CreditBalance:
        current = self.balances.get(user_id) or CreditBalance(user_id=user_id)
        if current.balance < amount:
            raise InsufficientCredits(user_id, amount, current.balance)
        self._append(user_id, -amount, CreditTransactionType.USAGE, reference_id, description)
        updated = current.model_copy(
            update={
                "balance": current.balance - amount,
                "lifetime_used": current.lifetime_used + amount,
            }
        )
        self.balances[user_id] = updated
        return updated

    async def list_transactions(self, user_id: str, *, limit: int) -> Sequence[CreditTransaction]:
        owned = [tx for tx in reversed(self.transactions) if tx.user_id == user_id]
        return owned[:limit]

    def _append(
        self,
        user_id: str,
        amount: int,
        transaction_type: CreditTransactionType,
        reference_id: Optional[str],
        description: Optional[str],
    ) -> None:
        self.transactions.append(
            CreditTransaction(
                transaction_id=f"ctx_{uuid4().hex}",
                user_id=user_id,
                amount=amount,
                type=transaction_type,
                reference_id=reference_id,
                description=description,
            )
        )


class InMemoryPreferenceRepository:
    def __init__(self) -> None:
        self.auto_use: Dict[str, bool] = {}

    async def get_auto_use_credits(self, user_id: str) -> bool:
        return self.auto_use.get(user_id, True)

    async def set_auto_use_credits(self, user_id: str, enabled: bool) -> bool:
        self.auto_use[user_id] = enabled
        return enabled


class RecordingNotifier:
    def __init__(self) -> None:
        self.thresholds: List[Tuple[str, str, int, int, float]] = []
        self.refunds: List[Tuple[str, Optional[str], int]] = []

    def notify_refund_review(self, user_id: str, order_id: Optional[str], amount_cents: int) -> None:
        self.refunds.append((user_id, order_id, amount_cents))

    def notify_usage_threshold(
        self,
        user_id: str,
        feature: str,
        *,
        used: int,
        limit: int,
        threshold: float,
    ) -> None:
        self.thresholds.append((user_id, feature, used, limit, threshold))


class RecordingEventLogger:
    def __init__(self) -> None:
        self.events: List[BillingAuditEvent] = []

    def log(self, event: BillingAuditEvent) -> None:
        self.events.append(event)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def snapshot_repo(clock: FixedClock) -> InMemorySnapshotRepository:
    return InMemorySnapshotRepository(clock)


@pytest.fixture
def usage_repo() -> InMemoryUsageRepository:
    return InMemoryUsageRepository()


@pytest.fixture
def billing_repo() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def credit_repo() -> InMemoryCreditRepository:
    return InMemoryCreditRepository()


@pytest.fixture
def preferences() -> InMemoryPreferenceRepository:
    return InMemoryPreferenceRepository()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def event_logger() -> RecordingEventLogger:
    return RecordingEventLogger()


@pytest.fixture
def usage_counter(usage_repo: InMemoryUsageRepository, clock: FixedClock) -> UsageCounter:
    return UsageCounter(usage_repo, clock=clock)


@pytest.fixture
def ledger(credit_repo: InMemoryCreditRepository) -> CreditLedger:
    return CreditLedger(credit_repo)


@pytest.fixture
def snapshot_manager(
    snapshot_repo: InMemorySnapshotRepository,
    billing_repo: InMemoryBillingRepository,
    usage_counter: UsageCounter,
    clock: FixedClock,
) -> EntitlementSnapshotManager:
    return EntitlementSnapshotManager(snapshot_repo, billing_repo, usage_counter, clock=clock)


@pytest.fixture
def rebuilder(snapshot_manager: EntitlementSnapshotManager) -> BackgroundSnapshotRebuilder:
    return BackgroundSnapshotRebuilder(snapshot_manager)


@pytest.fixture
def engine(
    snapshot_manager: EntitlementSnapshotManager,
    billing_repo: InMemoryBillingRepository,
    ledger: CreditLedger,
    usage_counter: UsageCounter,
    preferences: InMemoryPreferenceRepository,
    notifier: RecordingNotifier,
    clock: FixedClock,
) -> EntitlementEngine:
    return EntitlementEngine(
        snapshot_manager,
        billing_repo,
        ledger,
        usage_counter,
        preferences,
        notifier=notifier,
        clock=clock,
        subscription_check_timeout=0.05,
    )


@pytest.fixture
def billing_service(
    billing_repo: InMemoryBillingRepository,
    ledger: CreditLedger,
    notifier: RecordingNotifier,
    event_logger: RecordingEventLogger,
    rebuilder: BackgroundSnapshotRebuilder,
    clock: FixedClock,
) -> BillingService:
    return BillingService(
        repository=billing_repo,
        ledger=ledger,
        notifier=notifier,
        event_logger=event_logger,
        rebuilder=rebuilder,
        clock=clock,
    )
