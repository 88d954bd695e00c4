"""Entitlement and metering configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Tuple
import os


@dataclass(frozen=True)
class EntitlementConfig:
    """Runtime knobs for the entitlement engine and status endpoints."""

    status_dependency_timeout: float
    status_total_timeout: float
    subscription_check_timeout: float
    stale_rebuild_seconds: int
    rebuild_max_attempts: int
    usage_retention_months: int
    usage_warning_thresholds: Tuple[float, ...]
    upgrade_url: str
    top_up_url: str


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_thresholds(value: Optional[str], *, default: Tuple[float, ...]) -> Tuple[float, ...]:
    if value is None or not value.strip():
        return default
    thresholds = []
    for part in value.split(","):
        fraction = _to_float(part.strip(), default=0.0)
        if 0.0 < fraction < 1.0:
            thresholds.append(fraction)
    return tuple(sorted(set(thresholds)))


def load_entitlement_config(env: Optional[Mapping[str, str]] = None) -> EntitlementConfig:
    """Load :class:`EntitlementConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    dependency_timeout = max(
        0.1, _to_float(env_mapping.get("ENTITLEMENT_STATUS_DEPENDENCY_TIMEOUT"), default=15.0)
    )
    total_timeout = max(
        dependency_timeout,
        _to_float(env_mapping.get("ENTITLEMENT_STATUS_TOTAL_TIMEOUT"), default=30.0),
    )
    subscription_check_timeout = max(
        0.1, _to_float(env_mapping.get("ENTITLEMENT_SUBSCRIPTION_CHECK_TIMEOUT"), default=2.0)
    )
    stale_rebuild_seconds = max(1, _to_int(env_mapping.get("ENTITLEMENT_STALE_REBUILD_SECONDS"), default=120))
    rebuild_max_attempts = max(1, _to_int(env_mapping.get("ENTITLEMENT_REBUILD_MAX_ATTEMPTS"), default=3))
    usage_retention_months = max(1, _to_int(env_mapping.get("USAGE_RETENTION_MONTHS"), default=6))
    thresholds = _to_thresholds(env_mapping.get("USAGE_WARNING_THRESHOLDS"), default=(0.8, 0.9))

    app_base_url = env_mapping.get("APP_BASE_URL", "http://localhost:5173").rstrip("/")

    return EntitlementConfig(
        status_dependency_timeout=dependency_timeout,
        status_total_timeout=total_timeout,
        subscription_check_timeout=subscription_check_timeout,
        stale_rebuild_seconds=stale_rebuild_seconds,
        rebuild_max_attempts=rebuild_max_attempts,
        usage_retention_months=usage_retention_months,
        usage_warning_thresholds=thresholds,
        upgrade_url=env_mapping.get("UPGRADE_URL") or f"{app_base_url}/pricing",
        top_up_url=env_mapping.get("TOP_UP_URL") or f"{app_base_url}/credits",
    )


__all__ = ["EntitlementConfig", "load_entitlement_config"]
