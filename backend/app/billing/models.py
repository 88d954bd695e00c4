"""Domain models for the billing system."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..entitlements.models import SubscriptionRecord

Subscription = SubscriptionRecord


class SubscriptionEventType(str, Enum):
    """Normalized billing provider events that the application reacts to."""

    CREATED = "created"
    UPDATED = "updated"
    CANCELLED = "cancelled"
    RESUMED = "resumed"
    EXPIRED = "expired"
    PAUSED = "paused"
    UNPAUSED = "unpaused"
    PAYMENT_SUCCESS = "payment_success"
    REFUND = "refund"
    ORDER_CREATED = "order_created"


class CreditTransactionType(str, Enum):
    """Kinds of credit ledger entries."""

    PURCHASE = "PURCHASE"
    BONUS = "BONUS"
    REFUND = "REFUND"
    USAGE = "USAGE"


class BillingWebhookEvent(BaseModel):
    """Normalized webhook payload stored for idempotency tracking."""

    event_id: str
    event_type: SubscriptionEventType
    payload: Dict[str, object]
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CreditBalance(BaseModel):
    """Denormalized credit balance for a user."""

    user_id: str
    balance: int = Field(default=0, ge=0)
    lifetime_purchased: int = Field(default=0, ge=0)
    lifetime_used: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CreditTransaction(BaseModel):
    """Append-only ledger entry; usage rows carry negative amounts."""

    transaction_id: str
    user_id: str
    amount: int
    type: CreditTransactionType
    reference_id: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("amount")
    @classmethod
    def _non_zero_amount(cls, value: int) -> int:
        if value == 0:
            raise ValueError("amount must be non-zero")
        return value


class PaymentRecord(BaseModel):
    """Successful subscription payment reported by the provider."""

    user_id: str
    order_id: str
    subscription_id: Optional[str] = None
    amount_cents: int = Field(default=0, ge=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class BillingAuditEventType(str, Enum):
    """Audit event categories emitted by the billing subsystem."""

    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    PAYMENT_RECEIVED = "payment_received"
    REFUND_REQUESTED = "refund_requested"
    CREDITS_PURCHASED = "credits_purchased"


class BillingAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: BillingAuditEventType
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
