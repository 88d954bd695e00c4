"""Entitlements domain models, plan catalog, usage counters and snapshots.

The enforcement gate lives in :mod:`.service` and is imported from there
directly, since it depends on the billing ledger.
"""

from .catalog import (
    CREDIT_ONLY,
    CRITICAL_FEATURES,
    FEATURE_ALIASES,
    PLAN_CATALOG,
    UNLIMITED,
    PlanTier,
    build_feature_map,
    canonical_feature_key,
    compute_feature_rights,
    get_plan_limits,
    get_plan_tier,
    list_available_plans,
    normalize_plan_id,
)
from .models import (
    ACTIVE_STATUSES,
    ConsumptionDecision,
    ConsumptionSource,
    EligibilityResult,
    EntitlementSnapshot,
    FeatureRights,
    PlanKey,
    RebuildStatus,
    SubscriptionRecord,
    SubscriptionStatus,
    UsageRecord,
)
from .snapshot import (
    BackgroundSnapshotRebuilder,
    EntitlementSnapshotManager,
    SnapshotRebuildFailed,
    SnapshotRepository,
    SubscriptionReader,
)
from .usage import UsageCounter, UsageRepository, calendar_month_window, resolve_billing_period

__all__ = [
    "ACTIVE_STATUSES",
    "BackgroundSnapshotRebuilder",
    "CREDIT_ONLY",
    "CRITICAL_FEATURES",
    "ConsumptionDecision",
    "ConsumptionSource",
    "EligibilityResult",
    "EntitlementSnapshot",
    "EntitlementSnapshotManager",
    "FEATURE_ALIASES",
    "FeatureRights",
    "PLAN_CATALOG",
    "PlanKey",
    "PlanTier",
    "RebuildStatus",
    "SnapshotRebuildFailed",
    "SnapshotRepository",
    "SubscriptionReader",
    "SubscriptionRecord",
    "SubscriptionStatus",
    "UNLIMITED",
    "UsageCounter",
    "UsageRecord",
    "UsageRepository",
    "build_feature_map",
    "calendar_month_window",
    "canonical_feature_key",
    "compute_feature_rights",
    "get_plan_limits",
    "get_plan_tier",
    "list_available_plans",
    "normalize_plan_id",
    "resolve_billing_period",
]
