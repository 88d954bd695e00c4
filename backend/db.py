"""Shared asyncpg connection pool for the entitlement and billing stores."""
from __future__ import annotations

import logging
import math
import os
from typing import Any, Dict, Optional

import asyncpg

LOGGER = logging.getLogger("db")


def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


DB_CONFIG: Dict[str, Any] = {
    "host": os.getenv("DB_HOST", "127.0.0.1"),
    "port": int(os.getenv("DB_PORT", "5432")),
    "database": os.getenv("DB_NAME", "integrity_db"),
    "user": os.getenv("DB_USER", "integrity_user"),
    "password": os.getenv("DB_PASSWORD", "integrity_pass"),
}
DB_CONNECT_TIMEOUT = _parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5"))
DB_POOL_MAX_SIZE = int(os.getenv("DB_POOL_MAX_SIZE", "10"))

_pool: Optional[asyncpg.Pool] = None


async def create_pool() -> asyncpg.Pool:
    return await asyncpg.create_pool(
        min_size=1,
        max_size=DB_POOL_MAX_SIZE,
        command_timeout=10,
        timeout=DB_CONNECT_TIMEOUT,
        **DB_CONFIG,
    )


async def init_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await create_pool()
        LOGGER.info("Database pool ready host=%s db=%s", DB_CONFIG["host"], DB_CONFIG["database"])
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        LOGGER.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool has not been initialised yet")
    return _pool


__all__ = ["DB_CONFIG", "close_pool", "create_pool", "get_pool", "init_pool"]
