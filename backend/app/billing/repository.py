"""Persistence layer for billing domain objects."""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Sequence
from uuid import uuid4

import asyncpg

from ..entitlements.models import PlanKey, SubscriptionRecord, SubscriptionStatus
from .credits import InsufficientCredits
from .models import (
    BillingWebhookEvent,
    CreditBalance,
    CreditTransaction,
    CreditTransactionType,
    PaymentRecord,
)

try:  # pragma: no cover - resolve pool helper when imported from FastAPI app
    from backend.db import get_pool
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "backend":
        raise
    from ...db import get_pool  # type: ignore[no-redef]


def _row_to_subscription(row: asyncpg.Record) -> SubscriptionRecord:
    return SubscriptionRecord(
        user_id=row["user_id"],
        plan_key=PlanKey(row["plan"]),
        status=SubscriptionStatus(row["status"]),
        customer_id=row["customer_id"],
        subscription_id=row["subscription_id"],
        current_period_start=row["current_period_start"],
        current_period_end=row["current_period_end"],
        renews_at=row["renews_at"],
        ends_at=row["ends_at"],
        cancel_at_period_end=bool(row["cancel_at_period_end"]),
        entitlement_expires_at=row["entitlement_expires_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_balance(row: asyncpg.Record) -> CreditBalance:
    return CreditBalance(
        user_id=row["user_id"],
        balance=int(row["balance"]),
        lifetime_purchased=int(row["lifetime_purchased"]),
        lifetime_used=int(row["lifetime_used"]),
        updated_at=row["updated_at"],
    )


def _row_to_transaction(row: asyncpg.Record) -> CreditTransaction:
    return CreditTransaction(
        transaction_id=row["transaction_id"],
        user_id=row["user_id"],
        amount=int(row["amount"]),
        type=CreditTransactionType(row["type"]),
        reference_id=row["reference_id"],
        description=row["description"],
        created_at=row["created_at"],
    )


class _PoolBackedRepository:
    def __init__(self, *, pool: Optional[asyncpg.Pool] = None) -> None:
        self._pool = pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = self._pool or get_pool()
        async with pool.acquire() as connection:
            yield connection


class PostgresBillingRepository(_PoolBackedRepository):
    """Concrete repository persisting subscriptions and provider events in PostgreSQL."""

    async def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM subscriptions WHERE user_id = $1", user_id)
        return _row_to_subscription(row) if row else None

    async def upsert_subscription(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO subscriptions (
                    user_id,
                    plan,
                    status,
                    customer_id,
                    subscription_id,
                    current_period_start,
                    current_period_end,
                    renews_at,
                    ends_at,
                    cancel_at_period_end,
                    entitlement_expires_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                ON CONFLICT (user_id) DO UPDATE SET
                    plan = EXCLUDED.plan,
                    status = EXCLUDED.status,
                    customer_id = EXCLUDED.customer_id,
                    subscription_id = EXCLUDED.subscription_id,
                    current_period_start = EXCLUDED.current_period_start,
                    current_period_end = EXCLUDED.current_period_end,
                    renews_at = EXCLUDED.renews_at,
                    ends_at = EXCLUDED.ends_at,
                    cancel_at_period_end = EXCLUDED.cancel_at_period_end,
                    entitlement_expires_at = EXCLUDED.entitlement_expires_at,
                    updated_at = NOW()
                RETURNING *
                """,
                subscription.user_id,
                subscription.plan_key.value,
                subscription.status.value,
                subscription.customer_id,
                subscription.subscription_id,
                subscription.current_period_start,
                subscription.current_period_end,
                subscription.renews_at,
                subscription.ends_at,
                subscription.cancel_at_period_end,
                subscription.entitlement_expires_at,
            )
        if not row:
            raise RuntimeError("Failed to persist subscription")
        return _row_to_subscription(row)

    async def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        async with self._connection() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO webhook_events (event_id, event_type, payload, received_at)
                VALUES ($1, $2, $3::jsonb, $4)
                ON CONFLICT (event_id) DO NOTHING
                RETURNING event_id
                """,
                event.event_id,
                event.event_type.value,
                json.dumps(event.payload, default=str),
                event.received_at,
            )
        return inserted is not None

    async def forget_webhook_event(self, event_id: str) -> None:
        async with self._connection() as conn:
            await conn.execute("DELETE FROM webhook_events WHERE event_id = $1", event_id)

    async def record_payment(self, payment: PaymentRecord) -> PaymentRecord:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO payment_history (
                    user_id, order_id, subscription_id, amount_cents, currency, occurred_at
                )
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (order_id) DO NOTHING
                """,
                payment.user_id,
                payment.order_id,
                payment.subscription_id,
                payment.amount_cents,
                payment.currency,
                payment.occurred_at,
            )
        return payment


class PostgresCreditRepository(_PoolBackedRepository):
    """Credit balances and the append-only transaction log.

    Grants and deductions each run in one transaction; the balance row is
    locked with ``FOR UPDATE`` before a deduction is checked.
    """

    async def get_balance(self, user_id: str) -> Optional[CreditBalance]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM credit_balances WHERE user_id = $1", user_id)
        return _row_to_balance(row) if row else None

    async def apply_grant(
        self,
        user_id: str,
        amount: int,
        transaction_type: CreditTransactionType,
        *,
        reference_id: Optional[str],
        description: Optional[str],
    ) -> Optional[CreditBalance]:
        async with self._connection() as conn:
            async with conn.transaction():
                inserted = await conn.fetchval(
                    """
                    INSERT INTO credit_transactions (
                        transaction_id, user_id, amount, type, reference_id, description
                    )
                    VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT (reference_id, type) DO NOTHING
                    RETURNING transaction_id
                    """,
                    f"ctx_{uuid4().hex}",
                    user_id,
                    amount,
                    transaction_type.value,
                    reference_id,
                    description,
                )
                if inserted is None:
                    return None
                row = await conn.fetchrow(
                    """
                    INSERT INTO credit_balances (user_id, balance, lifetime_purchased, lifetime_used)
                    VALUES ($1, $2, $2, 0)
                    ON CONFLICT (user_id) DO UPDATE SET
                        balance = credit_balances.balance + EXCLUDED.balance,
                        lifetime_purchased = credit_balances.lifetime_purchased + EXCLUDED.lifetime_purchased,
                        updated_at = NOW()
                    RETURNING *
                    """,
                    user_id,
                    amount,
                )
        return _row_to_balance(row)

    async def apply_deduction(
        self,
        user_id: str,
        amount: int,
        *,
        reference_id: Optional[str],
        description: Optional[str],
    ) -> CreditBalance:
        async with self._connection() as conn:
            async with conn.transaction():
                current = await conn.fetchval(
                    "SELECT balance FROM credit_balances WHERE user_id = $1 FOR UPDATE",
                    user_id,
                )
                available = int(current or 0)
                if available < amount:
                    raise InsufficientCredits(user_id, amount, available)
                await conn.execute(
                    """
                    INSERT INTO credit_transactions (
                        transaction_id, user_id, amount, type, reference_id, description
                    )
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    f"ctx_{uuid4().hex}",
                    user_id,
                    -amount,
                    CreditTransactionType.USAGE.value,
                    reference_id,
                    description,
                )
                row = await conn.fetchrow(
                    """
                    UPDATE credit_balances SET
                        balance = balance - $2,
                        lifetime_used = lifetime_used + $2,
                        updated_at = NOW()
                    WHERE user_id = $1
                    RETURNING *
                    """,
                    user_id,
                    amount,
                )
        return _row_to_balance(row)

    async def list_transactions(self, user_id: str, *, limit: int) -> Sequence[CreditTransaction]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM credit_transactions
                WHERE user_id = $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                user_id,
                limit,
            )
        return [_row_to_transaction(row) for row in rows]


class PostgresCreditPreferenceRepository(_PoolBackedRepository):
    """Reads and writes ``users.auto_use_credits``."""

    async def get_auto_use_credits(self, user_id: str) -> bool:
        async with self._connection() as conn:
            value = await conn.fetchval("SELECT auto_use_credits FROM users WHERE id = $1", user_id)
        return True if value is None else bool(value)

    async def set_auto_use_credits(self, user_id: str, enabled: bool) -> bool:
        async with self._connection() as conn:
            value = await conn.fetchval(
                "UPDATE users SET auto_use_credits = $2 WHERE id = $1 RETURNING auto_use_credits",
                user_id,
                enabled,
            )
        if value is None:
            raise LookupError("User not found")
        return bool(value)


__all__ = [
    "PostgresBillingRepository",
    "PostgresCreditPreferenceRepository",
    "PostgresCreditRepository",
]
