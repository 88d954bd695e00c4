"""Domain models for entitlements, snapshots and plan computation."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PlanKey(str, Enum):
    """Canonical identifiers for subscription plans."""

    FREE = "free"
    PAYG = "payg"
    STUDENT = "student"
    STUDENT_PRO = "student_pro"
    RESEARCHER = "researcher"


class SubscriptionStatus(str, Enum):
    """Lifecycle state for subscriptions."""

    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"
    PAUSED = "paused"


ACTIVE_STATUSES: FrozenSet[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE}
)


class RebuildStatus(str, Enum):
    """State of the last snapshot rebuild."""

    IDLE = "idle"
    RUNNING = "running"
    FAILED = "failed"


class ConsumptionSource(str, Enum):
    """Resource pool a granted consumption was charged against."""

    PLAN = "PLAN"
    CREDIT = "CREDIT"


class SubscriptionRecord(BaseModel):
    """Subscription state for a single user, synchronized from the billing provider."""

    user_id: str
    plan_key: PlanKey = PlanKey.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    renews_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    entitlement_expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def effective_plan(self, now: datetime) -> PlanKey:
        """Return the plan the user is entitled to at ``now``.

        An entitlement expiry, when present, is the authoritative cutoff and
        overrides the stored status in both directions.
        """

        if self.entitlement_expires_at is not None:
            return self.plan_key if now < self.entitlement_expires_at else PlanKey.FREE
        if self.is_active:
            return self.plan_key
        return PlanKey.FREE

    def is_paid_active(self, now: datetime) -> bool:
        return self.effective_plan(now) != PlanKey.FREE


class FeatureRights(BaseModel):
    """Per-feature quota state stored inside an entitlement snapshot."""

    limit: int
    used: int = 0
    remaining: int = 0
    unlimited: bool = False
    enabled: bool = True
    credit_only: bool = False

    model_config = ConfigDict(frozen=True)

    @field_validator("used")
    @classmethod
    def _validate_used(cls, value: int) -> int:
        if value < 0:
            raise ValueError("used must be >= 0")
        return value

    @property
    def has_quota(self) -> bool:
        return self.enabled and not self.credit_only and not self.unlimited and self.remaining > 0

    def consumed(self) -> "FeatureRights":
        """Return the rights after one unit has been taken from the quota."""

        if self.unlimited:
            return self.model_copy(update={"used": self.used + 1})
        return self.model_copy(
            update={"used": self.used + 1, "remaining": max(0, self.remaining - 1)}
        )


class EntitlementSnapshot(BaseModel):
    """Materialized view of plan limits combined with current-cycle usage."""

    user_id: str
    plan: PlanKey
    features: Dict[str, FeatureRights] = Field(default_factory=dict)
    billing_cycle_start: datetime
    billing_cycle_end: datetime
    rebuild_status: RebuildStatus = RebuildStatus.IDLE
    last_rebuilt_at: Optional[datetime] = None
    version: int = 0
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @property
    def is_unstable(self) -> bool:
        return self.rebuild_status in {RebuildStatus.RUNNING, RebuildStatus.FAILED}

    def feature(self, key: str) -> Optional[FeatureRights]:
        return self.features.get(key)


class ConsumptionDecision(BaseModel):
    """Outcome of a successful pass through the entitlement gate."""

    user_id: str
    feature: str
    source: ConsumptionSource
    plan: PlanKey
    remaining: Optional[int] = None
    unlimited: bool = False
    credits_charged: int = 0
    credit_balance: Optional[int] = None
    optimistic: bool = False

    model_config = ConfigDict(frozen=True)


class EligibilityResult(BaseModel):
    """Read-only preview of whether the plan would allow a feature."""

    feature: str
    allowed: bool
    remaining: Optional[int] = None
    unlimited: bool = False
    reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class UsageRecord(BaseModel):
    """Usage counter row for one feature within one billing period."""

    user_id: str
    feature: str
    period_start: datetime
    period_end: datetime
    count: int = 0

    model_config = ConfigDict(frozen=True)
