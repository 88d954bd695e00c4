"""Billing domain package: subscription lifecycle and the credit ledger."""

from .credits import CreditLedger, CreditRepository, InsufficientCredits, calculate_cost
from .models import (
    BillingAuditEvent,
    BillingAuditEventType,
    BillingWebhookEvent,
    CreditBalance,
    CreditTransaction,
    CreditTransactionType,
    PaymentRecord,
    Subscription,
    SubscriptionEventType,
)
from .service import (
    CREDIT_PACKS,
    BillingEventLogger,
    BillingNotifier,
    BillingRepository,
    BillingService,
    EntitlementRebuildScheduler,
)

__all__ = [
    "BillingAuditEvent",
    "BillingAuditEventType",
    "BillingEventLogger",
    "BillingNotifier",
    "BillingRepository",
    "BillingService",
    "BillingWebhookEvent",
    "CREDIT_PACKS",
    "CreditBalance",
    "CreditLedger",
    "CreditRepository",
    "CreditTransaction",
    "CreditTransactionType",
    "EntitlementRebuildScheduler",
    "InsufficientCredits",
    "PaymentRecord",
    "Subscription",
    "SubscriptionEventType",
    "calculate_cost",
]
