"""Application wiring for the entitlement engine and its collaborators."""
from __future__ import annotations

from functools import lru_cache

from ..billing import CreditLedger
from ..billing.repository import (
    PostgresBillingRepository,
    PostgresCreditPreferenceRepository,
    PostgresCreditRepository,
)
from ..config import EntitlementConfig, load_entitlement_config
from ..entitlements import BackgroundSnapshotRebuilder, EntitlementSnapshotManager, UsageCounter
from ..entitlements.repository import PostgresSnapshotRepository, PostgresUsageRepository
from ..entitlements.service import EntitlementEngine
from .billing import LoggingBillingNotifier


@lru_cache(maxsize=1)
def get_entitlement_config() -> EntitlementConfig:
    return load_entitlement_config()


@lru_cache(maxsize=1)
def get_subscription_repository() -> PostgresBillingRepository:
    return PostgresBillingRepository()


@lru_cache(maxsize=1)
def get_usage_counter() -> UsageCounter:
    return UsageCounter(PostgresUsageRepository())


@lru_cache(maxsize=1)
def get_credit_ledger() -> CreditLedger:
    return CreditLedger(PostgresCreditRepository())


@lru_cache(maxsize=1)
def get_credit_preferences() -> PostgresCreditPreferenceRepository:
    return PostgresCreditPreferenceRepository()


@lru_cache(maxsize=1)
def get_snapshot_manager() -> EntitlementSnapshotManager:
    config = get_entitlement_config()
    return EntitlementSnapshotManager(
        PostgresSnapshotRepository(),
        get_subscription_repository(),
        get_usage_counter(),
        stale_rebuild_seconds=config.stale_rebuild_seconds,
        max_attempts=config.rebuild_max_attempts,
    )


@lru_cache(maxsize=1)
def get_background_rebuilder() -> BackgroundSnapshotRebuilder:
    return BackgroundSnapshotRebuilder(get_snapshot_manager())


@lru_cache(maxsize=1)
def get_entitlement_engine() -> EntitlementEngine:
    config = get_entitlement_config()
    return EntitlementEngine(
        get_snapshot_manager(),
        get_subscription_repository(),
        get_credit_ledger(),
        get_usage_counter(),
        get_credit_preferences(),
        notifier=LoggingBillingNotifier(),
        subscription_check_timeout=config.subscription_check_timeout,
        warning_thresholds=config.usage_warning_thresholds,
    )


__all__ = [
    "get_background_rebuilder",
    "get_credit_ledger",
    "get_credit_preferences",
    "get_entitlement_config",
    "get_entitlement_engine",
    "get_snapshot_manager",
    "get_subscription_repository",
    "get_usage_counter",
]
