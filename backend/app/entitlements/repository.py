"""Persistence layer for entitlement snapshots and usage counters."""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, Optional, Sequence

import asyncpg

from .models import EntitlementSnapshot, FeatureRights, PlanKey, RebuildStatus, UsageRecord

try:  # pragma: no cover - resolve pool helper when imported from FastAPI app
    from backend.db import get_pool
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ...db import get_pool  # type: ignore[no-redef]


def _load_json(value: object) -> Dict[str, object]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)  # type: ignore[arg-type]


def _row_to_snapshot(row: asyncpg.Record) -> EntitlementSnapshot:
    features = {
        key: FeatureRights.model_validate(rights)
        for key, rights in _load_json(row["features"]).items()
    }
    return EntitlementSnapshot(
        user_id=row["user_id"],
        plan=PlanKey(row["plan"]),
        features=features,
        billing_cycle_start=row["billing_cycle_start"],
        billing_cycle_end=row["billing_cycle_end"],
        rebuild_status=RebuildStatus(row["rebuild_status"]),
        last_rebuilt_at=row["last_rebuilt_at"],
        version=int(row["version"]),
        updated_at=row["updated_at"],
    )


def _row_to_usage(row: asyncpg.Record) -> UsageRecord:
    return UsageRecord(
        user_id=row["user_id"],
        feature=row["feature"],
        period_start=row["period_start"],
        period_end=row["period_end"],
        count=int(row["count"]),
    )


def _features_json(snapshot: EntitlementSnapshot) -> str:
    return json.dumps({key: rights.model_dump() for key, rights in snapshot.features.items()})


class _PoolBackedRepository:
    def __init__(self, *, pool: Optional[asyncpg.Pool] = None) -> None:
        self._pool = pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = self._pool or get_pool()
        async with pool.acquire() as connection:
            yield connection


class PostgresSnapshotRepository(_PoolBackedRepository):
    """Stores one ``user_entitlements`` row per user.

    Consumption is a single conditional ``UPDATE`` on the feature's JSON
    entry, so concurrent decrements serialize on the row lock and re-check
    ``remaining`` before writing.
    """

    async def get_snapshot(self, user_id: str) -> Optional[EntitlementSnapshot]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM user_entitlements WHERE user_id = $1", user_id)
        return _row_to_snapshot(row) if row else None

    async def set_rebuild_status(self, user_id: str, status: RebuildStatus) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO user_entitlements (
                    user_id, plan, features, billing_cycle_start, billing_cycle_end,
                    rebuild_status, version, updated_at
                )
                VALUES ($1, 'free', '{}'::jsonb, NOW(), NOW(), $2, 0, NOW())
                ON CONFLICT (user_id) DO UPDATE SET
                    rebuild_status = EXCLUDED.rebuild_status,
                    updated_at = NOW()
                """,
                user_id,
                status.value,
            )

    async def save_snapshot(
        self,
        snapshot: EntitlementSnapshot,
        *,
        expected_version: Optional[int],
    ) -> Optional[EntitlementSnapshot]:
        args = (
            snapshot.user_id,
            snapshot.plan.value,
            _features_json(snapshot),
            snapshot.billing_cycle_start,
            snapshot.billing_cycle_end,
            snapshot.last_rebuilt_at,
        )
        async with self._connection() as conn:
            if expected_version is None:
                row = await conn.fetchrow(
                    """
                    INSERT INTO user_entitlements (
                        user_id, plan, features, billing_cycle_start, billing_cycle_end,
                        rebuild_status, last_rebuilt_at, version, updated_at
                    )
                    VALUES ($1, $2, $3::jsonb, $4, $5, 'idle', $6, 1, NOW())
                    ON CONFLICT (user_id) DO UPDATE SET
                        plan = EXCLUDED.plan,
                        features = EXCLUDED.features,
                        billing_cycle_start = EXCLUDED.billing_cycle_start,
                        billing_cycle_end = EXCLUDED.billing_cycle_end,
                        rebuild_status = 'idle',
                        last_rebuilt_at = EXCLUDED.last_rebuilt_at,
                        version = user_entitlements.version + 1,
                        updated_at = NOW()
                    RETURNING *
                    """,
                    *args,
                )
            else:
                row = await conn.fetchrow(
                    """
                    UPDATE user_entitlements SET
                        plan = $2,
                        features = $3::jsonb,
                        billing_cycle_start = $4,
                        billing_cycle_end = $5,
                        rebuild_status = 'idle',
                        last_rebuilt_at = $6,
                        version = version + 1,
                        updated_at = NOW()
                    WHERE user_id = $1 AND version = $7
                    RETURNING *
                    """,
                    *args,
                    expected_version,
                )
        return _row_to_snapshot(row) if row else None

    async def decrement_feature(self, user_id: str, feature: str) -> Optional[FeatureRights]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE user_entitlements SET
                    features = jsonb_set(
                        jsonb_set(
                            features,
                            ARRAY[$2::text, 'remaining'],
                            to_jsonb((features #>> ARRAY[$2::text, 'remaining'])::int - 1)
                        ),
                        ARRAY[$2::text, 'used'],
                        to_jsonb((features #>> ARRAY[$2::text, 'used'])::int + 1)
                    ),
                    version = version + 1,
                    updated_at = NOW()
                WHERE user_id = $1
                  AND features ? $2::text
                  AND COALESCE((features #>> ARRAY[$2::text, 'unlimited'])::boolean, FALSE) = FALSE
                  AND COALESCE((features #>> ARRAY[$2::text, 'credit_only'])::boolean, FALSE) = FALSE
                  AND (features #>> ARRAY[$2::text, 'remaining'])::int > 0
                RETURNING features -> $2::text AS rights
                """,
                user_id,
                feature,
            )
        if row is None:
            return None
        return FeatureRights.model_validate(_load_json(row["rights"]))


class PostgresUsageRepository(_PoolBackedRepository):
    """Monotonic per-period counters in ``usage_tracking``."""

    async def increment_usage(
        self,
        user_id: str,
        feature: str,
        *,
        period_start: datetime,
        period_end: datetime,
        amount: int = 1,
    ) -> int:
        async with self._connection() as conn:
            count = await conn.fetchval(
                """
                INSERT INTO usage_tracking (user_id, feature, period_start, period_end, count)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (user_id, feature, period_start) DO UPDATE SET
                    count = usage_tracking.count + EXCLUDED.count,
                    updated_at = NOW()
                RETURNING count
                """,
                user_id,
                feature,
                period_start,
                period_end,
                amount,
            )
        return int(count)

    async def get_usage_counts(self, user_id: str, *, period_start: datetime) -> Dict[str, int]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT feature, SUM(count) AS total
                FROM usage_tracking
                WHERE user_id = $1 AND period_start >= $2
                GROUP BY feature
                """,
                user_id,
                period_start,
            )
        return {row["feature"]: int(row["total"]) for row in rows}

    async def list_usage(self, user_id: str, *, since: datetime) -> Sequence[UsageRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT user_id, feature, period_start, period_end, count
                FROM usage_tracking
                WHERE user_id = $1 AND period_start >= $2
                ORDER BY period_start DESC, feature
                """,
                user_id,
                since,
            )
        return [_row_to_usage(row) for row in rows]

    async def delete_usage_before(self, cutoff: datetime) -> int:
        async with self._connection() as conn:
            status = await conn.execute("DELETE FROM usage_tracking WHERE period_end < $1", cutoff)
        # asyncpg returns the command tag, e.g. "DELETE 12".
        return int(status.split()[-1]) if status else 0


__all__ = ["PostgresSnapshotRepository", "PostgresUsageRepository"]
