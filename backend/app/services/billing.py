"""Application wiring for the billing service."""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from ..billing import BillingAuditEvent, BillingEventLogger, BillingNotifier, BillingService


logger = logging.getLogger("billing")


class LoggingBillingNotifier(BillingNotifier):
    """Notifier that records billing notifications to the application logger."""

    def notify_refund_review(self, user_id: str, order_id: Optional[str], amount_cents: int) -> None:
        logger.warning(
            "Refund needs review user=%s order=%s amount_cents=%s",
            user_id,
            order_id,
            amount_cents,
        )

    def notify_usage_threshold(
        self,
        user_id: str,
        feature: str,
        *,
        used: int,
        limit: int,
        threshold: float,
    ) -> None:
        logger.info(
            "Usage threshold %.0f%% reached user=%s feature=%s used=%s limit=%s",
            threshold * 100,
            user_id,
            feature,
            used,
            limit,
        )


class LoggingBillingEventLogger(BillingEventLogger):
    """Simple event logger forwarding billing audit events to logging."""

    def log(self, event: BillingAuditEvent) -> None:
        logger.info(
            "Billing event %s user=%s subscription=%s metadata=%s",
            event.event_type.value,
            event.user_id,
            event.subscription_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    from .entitlements import (
        get_background_rebuilder,
        get_credit_ledger,
        get_subscription_repository,
    )

    service = BillingService(
        repository=get_subscription_repository(),
        ledger=get_credit_ledger(),
        notifier=LoggingBillingNotifier(),
        event_logger=LoggingBillingEventLogger(),
        rebuilder=get_background_rebuilder(),
    )
    return service


__all__ = ["get_billing_service", "LoggingBillingNotifier", "LoggingBillingEventLogger"]
