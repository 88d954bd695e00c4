"""Subscription lifecycle driven by normalized billing provider events."""
from __future__ import annotations

import logging
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Mapping, Optional, Protocol

from ..entitlements.catalog import normalize_plan_id
from ..entitlements.models import PlanKey, SubscriptionRecord, SubscriptionStatus
from .credits import CreditLedger
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingWebhookEvent,
    CreditTransactionType,
    PaymentRecord,
    SubscriptionEventType,
)

logger = logging.getLogger("billing")

CREDIT_PACKS: Mapping[str, int] = {
    "credits_trial": 5,
    "credits_standard": 25,
    "credits_pro": 50,
    "credits_enterprise": 100,
}

_PROVIDER_STATUSES: Mapping[str, SubscriptionStatus] = {
    "on_trial": SubscriptionStatus.TRIALING,
    "cancelled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.PAST_DUE,
}


class BillingNotifier(Protocol):
    """Dispatches billing related notifications to users and operators."""

    def notify_refund_review(self, user_id: str, order_id: Optional[str], amount_cents: int) -> None:
        ...

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


class BillingEventLogger(Protocol):
    """Captures structured billing audit events."""

    def log(self, event: BillingAuditEvent) -> None:
        ...


class EntitlementRebuildScheduler(Protocol):
    """Queues an entitlement snapshot rebuild without waiting for it."""

    def schedule_rebuild(self, user_id: str) -> object:
        ...


class BillingRepository(Protocol):
    """Persistence operations required by the billing service."""

    async def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        ...

    async def upsert_subscription(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        ...

    async def record_webhook_event(self, event: BillingWebhookEvent) -> bool:
        ...

    async def forget_webhook_event(self, event_id: str) -> None:
        ...

    async def record_payment(self, payment: PaymentRecord) -> PaymentRecord:
        ...


# ``slots`` support for ``dataclass`` was added in Python 3.10. The backend
# can run under Python 3.9 in some environments (e.g., local development), so
# we enable slots conditionally to maintain compatibility while preserving the
# optimization where available.
_dataclass_kwargs = {"slots": True} if sys.version_info >= (3, 10) else {}


@dataclass(**_dataclass_kwargs)
class BillingService:
    """Applies provider events to subscriptions and credit balances."""

    repository: BillingRepository
    ledger: CreditLedger
    notifier: BillingNotifier
    event_logger: BillingEventLogger
    rebuilder: EntitlementRebuildScheduler
    clock: Optional[Callable[[], datetime]] = None
    credits_per_pack_unit: int = 100

    def _now(self) -> datetime:
        return self.clock() if self.clock else datetime.now(timezone.utc)

    async def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        return await self.repository.get_subscription(user_id)

    async def ensure_subscription(self, user_id: str) -> SubscriptionRecord:
        """Return the user's subscription, creating the free shadow row if needed."""

        existing = await self.repository.get_subscription(user_id)
        if existing is not None:
            return existing
        return await self.upsert_subscription(user_id)

    async def upsert_subscription(self, user_id: str, **changes: object) -> SubscriptionRecord:
        """Merge ``changes`` into the user's subscription and schedule a rebuild."""

        now = self._now()
        existing = await self.repository.get_subscription(user_id)
        base = existing or SubscriptionRecord(user_id=user_id, created_at=now, updated_at=now)
        updated = base.model_copy(update={**changes, "updated_at": now})
        persisted = await self.repository.upsert_subscription(updated)
        self.rebuilder.schedule_rebuild(user_id)
        return persisted

    async def get_active_plan(self, user_id: str, now: Optional[datetime] = None) -> PlanKey:
        subscription = await self.repository.get_subscription(user_id)
        if subscription is None:
            return PlanKey.FREE
        return subscription.effective_plan(now or self._now())

    async def cancel_at_period_end(self, user_id: str) -> SubscriptionRecord:
        """Stop renewal while keeping access until the current period ends."""

        subscription = await self._require_paid_subscription(user_id)
        expires_at = (
            subscription.current_period_end
            or subscription.renews_at
            or subscription.entitlement_expires_at
        )
        persisted = await self.upsert_subscription(
            user_id,
            cancel_at_period_end=True,
            ends_at=expires_at,
            entitlement_expires_at=expires_at,
        )
        self._audit(BillingAuditEventType.SUBSCRIPTION_CANCELED, persisted, source="user")
        return persisted

    async def reactivate(self, user_id: str) -> SubscriptionRecord:
        subscription = await self._require_paid_subscription(user_id)
        expires_at = subscription.renews_at or subscription.current_period_end
        persisted = await self.upsert_subscription(
            user_id,
            status=SubscriptionStatus.ACTIVE,
            cancel_at_period_end=False,
            ends_at=None,
            entitlement_expires_at=expires_at,
        )
        self._audit(BillingAuditEventType.SUBSCRIPTION_RESUMED, persisted, source="user")
        return persisted

    async def handle_webhook(self, event: BillingWebhookEvent) -> None:
        stored = await self.repository.record_webhook_event(event)
        if not stored:
            logger.info("Ignoring replayed billing event %s", event.event_id)
            return

        user_id = _optional_str(event.payload.get("user_id"))
        if not user_id:
            logger.warning(
                "Billing event %s (%s) has no user id, skipping",
                event.event_id,
                event.event_type.value,
            )
            return

        handlers: Dict[SubscriptionEventType, Callable] = {
            SubscriptionEventType.CREATED: self._handle_created,
            SubscriptionEventType.UPDATED: self._handle_updated,
            SubscriptionEventType.CANCELLED: self._handle_cancelled,
            SubscriptionEventType.RESUMED: self._handle_resumed,
            SubscriptionEventType.UNPAUSED: self._handle_resumed,
            SubscriptionEventType.PAUSED: self._handle_paused,
            SubscriptionEventType.EXPIRED: self._handle_expired,
            SubscriptionEventType.PAYMENT_SUCCESS: self._handle_payment_success,
            SubscriptionEventType.REFUND: self._handle_refund,
            SubscriptionEventType.ORDER_CREATED: self._handle_order_created,
        }
        try:
            await handlers[event.event_type](user_id, event)
        except Exception:
            # Unmark the event so the provider's redelivery is applied.
            logger.exception(
                "Billing event %s (%s) failed for user=%s",
                event.event_id,
                event.event_type.value,
                user_id,
            )
            await self.repository.forget_webhook_event(event.event_id)
            raise

    async def _handle_created(self, user_id: str, event: BillingWebhookEvent) -> None:
        payload = event.payload
        renews_at = _parse_optional_datetime(payload.get("renews_at"))
        started_at = _parse_optional_datetime(payload.get("created_at")) or self._now()
        persisted = await self.upsert_subscription(
            user_id,
            plan_key=normalize_plan_id(_optional_str(payload.get("plan"))),
            status=_parse_status(payload.get("status")),
            customer_id=_optional_str(payload.get("customer_id")),
            subscription_id=_optional_str(payload.get("subscription_id")),
            current_period_start=started_at,
            current_period_end=renews_at,
            renews_at=renews_at,
            ends_at=_parse_optional_datetime(payload.get("ends_at")),
            cancel_at_period_end=False,
            entitlement_expires_at=renews_at,
        )
        self._audit(BillingAuditEventType.SUBSCRIPTION_ACTIVATED, persisted)

    async def _handle_updated(self, user_id: str, event: BillingWebhookEvent) -> None:
        payload = event.payload
        changes: Dict[str, object] = {}
        if payload.get("plan"):
            changes["plan_key"] = normalize_plan_id(_optional_str(payload.get("plan")))
        if payload.get("status"):
            changes["status"] = _parse_status(payload.get("status"))
        for key in ("customer_id", "subscription_id"):
            if payload.get(key):
                changes[key] = _optional_str(payload.get(key))

        renews_at = _parse_optional_datetime(payload.get("renews_at"))
        ends_at = _parse_optional_datetime(payload.get("ends_at"))
        if renews_at:
            changes["renews_at"] = renews_at
            changes["current_period_end"] = renews_at
        if ends_at:
            changes["ends_at"] = ends_at
        expires_at = ends_at or renews_at
        if expires_at:
            changes["entitlement_expires_at"] = expires_at

        persisted = await self.upsert_subscription(user_id, **changes)
        self._audit(BillingAuditEventType.SUBSCRIPTION_UPDATED, persisted)

    async def _handle_cancelled(self, user_id: str, event: BillingWebhookEvent) -> None:
        payload = event.payload
        now = self._now()
        immediate = payload.get("immediate") is True
        ends_at = _parse_optional_datetime(payload.get("ends_at"))
        if immediate:
            expires_at = now
        else:
            existing = await self.repository.get_subscription(user_id)
            expires_at = ends_at or (existing.current_period_end if existing else None) or now

        persisted = await self.upsert_subscription(
            user_id,
            status=SubscriptionStatus.CANCELED,
            cancel_at_period_end=True,
            ends_at=ends_at or expires_at,
            entitlement_expires_at=expires_at,
        )
        self._audit(
            BillingAuditEventType.SUBSCRIPTION_CANCELED,
            persisted,
            immediate=str(immediate).lower(),
        )

    async def _handle_resumed(self, user_id: str, event: BillingWebhookEvent) -> None:
        now = self._now()
        renews_at = _parse_optional_datetime(event.payload.get("renews_at"))
        existing = await self.repository.get_subscription(user_id)
        if renews_at:
            expires_at: Optional[datetime] = renews_at
        elif existing and existing.current_period_end and existing.current_period_end > now:
            expires_at = existing.current_period_end
        else:
            expires_at = None

        changes: Dict[str, object] = {
            "status": SubscriptionStatus.ACTIVE,
            "cancel_at_period_end": False,
            "ends_at": None,
            "entitlement_expires_at": expires_at,
        }
        if renews_at:
            changes["renews_at"] = renews_at
            changes["current_period_end"] = renews_at
        persisted = await self.upsert_subscription(user_id, **changes)
        self._audit(BillingAuditEventType.SUBSCRIPTION_RESUMED, persisted, event=event.event_type.value)

    async def _handle_paused(self, user_id: str, event: BillingWebhookEvent) -> None:
        persisted = await self.upsert_subscription(
            user_id,
            status=SubscriptionStatus.PAUSED,
            entitlement_expires_at=self._now(),
        )
        self._audit(BillingAuditEventType.SUBSCRIPTION_PAUSED, persisted)

    async def _handle_expired(self, user_id: str, event: BillingWebhookEvent) -> None:
        now = self._now()
        existing = await self.repository.get_subscription(user_id)
        if existing and existing.entitlement_expires_at and existing.entitlement_expires_at > now:
            logger.warning(
                "Ignoring expired event %s for user=%s: access runs until %s",
                event.event_id,
                user_id,
                existing.entitlement_expires_at.isoformat(),
            )
            return

        persisted = await self.upsert_subscription(
            user_id,
            plan_key=PlanKey.FREE,
            status=SubscriptionStatus.EXPIRED,
            cancel_at_period_end=False,
            entitlement_expires_at=None,
        )
        self._audit(BillingAuditEventType.SUBSCRIPTION_EXPIRED, persisted)

    async def _handle_payment_success(self, user_id: str, event: BillingWebhookEvent) -> None:
        payload = event.payload
        now = self._now()
        renews_at = _parse_optional_datetime(payload.get("renews_at"))
        changes: Dict[str, object] = {"status": SubscriptionStatus.ACTIVE}
        if renews_at:
            existing = await self.repository.get_subscription(user_id)
            previous_end = existing.current_period_end if existing else None
            changes.update(
                current_period_start=previous_end if previous_end and previous_end < renews_at else now,
                current_period_end=renews_at,
                renews_at=renews_at,
                entitlement_expires_at=renews_at,
            )
        persisted = await self.upsert_subscription(user_id, **changes)

        payment = PaymentRecord(
            user_id=user_id,
            order_id=_optional_str(payload.get("order_id")) or event.event_id,
            subscription_id=persisted.subscription_id,
            amount_cents=_to_int(payload.get("amount_cents")),
            currency=_optional_str(payload.get("currency")) or "USD",
            occurred_at=event.received_at,
        )
        await self.repository.record_payment(payment)
        self._audit(
            BillingAuditEventType.PAYMENT_RECEIVED,
            persisted,
            order_id=payment.order_id,
            amount_cents=str(payment.amount_cents),
        )

    async def _handle_refund(self, user_id: str, event: BillingWebhookEvent) -> None:
        payload = event.payload
        order_id = _optional_str(payload.get("order_id"))
        amount_cents = _to_int(payload.get("amount_cents"))
        logger.warning(
            "Refund issued for user=%s order=%s amount_cents=%s, needs manual review",
            user_id,
            order_id,
            amount_cents,
        )
        self.notifier.notify_refund_review(user_id, order_id, amount_cents)
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.REFUND_REQUESTED,
                user_id=user_id,
                metadata={"order_id": order_id or "", "amount_cents": str(amount_cents)},
            )
        )
        self.rebuilder.schedule_rebuild(user_id)

    async def _handle_order_created(self, user_id: str, event: BillingWebhookEvent) -> None:
        payload = event.payload
        pack_size = _credit_pack_size(payload)
        if pack_size is None:
            logger.info("Order event %s is not a credit pack, nothing to grant", event.event_id)
            return

        order_id = _optional_str(payload.get("order_id"))
        if not order_id:
            raise ValueError("order_id missing from credit pack order")

        amount = pack_size * self.credits_per_pack_unit
        balance = await self.ledger.add_credits(
            user_id,
            amount,
            CreditTransactionType.PURCHASE,
            reference_id=order_id,
            description=f"Credit pack x{pack_size}",
        )
        self.event_logger.log(
            BillingAuditEvent(
                event_type=BillingAuditEventType.CREDITS_PURCHASED,
                user_id=user_id,
                metadata={"order_id": order_id, "credits": str(amount), "balance": str(balance.balance)},
            )
        )

    async def _require_paid_subscription(self, user_id: str) -> SubscriptionRecord:
        subscription = await self.repository.get_subscription(user_id)
        if subscription is None or subscription.plan_key == PlanKey.FREE:
            raise LookupError("No paid subscription found")
        return subscription

    def _audit(self, event_type: BillingAuditEventType, subscription: SubscriptionRecord, **metadata: str) -> None:
        self.event_logger.log(
            BillingAuditEvent(
                event_type=event_type,
                user_id=subscription.user_id,
                subscription_id=subscription.subscription_id,
                metadata={"plan": subscription.plan_key.value, "status": subscription.status.value, **metadata},
            )
        )


def _credit_pack_size(payload: Mapping[str, object]) -> Optional[int]:
    pack = (_optional_str(payload.get("pack")) or "").strip().lower()
    if pack in CREDIT_PACKS:
        return CREDIT_PACKS[pack]
    match = re.fullmatch(r"credits_(\d+)", pack)
    if match:
        return int(match.group(1))
    variant = (_optional_str(payload.get("variant_name")) or "").upper()
    match = re.search(r"CREDITS_(\d+)", variant)
    if match:
        return int(match.group(1))
    return None


def _parse_status(value: object) -> SubscriptionStatus:
    raw = (_optional_str(value) or SubscriptionStatus.ACTIVE.value).strip().lower()
    if raw in _PROVIDER_STATUSES:
        return _PROVIDER_STATUSES[raw]
    try:
        return SubscriptionStatus(raw)
    except ValueError as exc:
        raise ValueError(f"Unknown subscription status: {raw}") from exc


def _parse_optional_datetime(value: object) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError("Unsupported datetime value")


def _optional_str(value: object) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _to_int(value: object) -> int:
    if value is None or value == "":
        return 0
    try:
        return max(0, int(value))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


__all__ = [
    "BillingEventLogger",
    "BillingNotifier",
    "BillingRepository",
    "BillingService",
    "CREDIT_PACKS",
    "EntitlementRebuildScheduler",
]
