"""API schemas for subscription, credit and billing endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..billing import CreditBalance, CreditTransaction
from ..entitlements.models import EligibilityResult, PlanKey, SubscriptionRecord, UsageRecord
from ..services.subscription_status import SubscriptionOverview


class BillingWebhookPayload(BaseModel):
    id: str
    type: str
    payload: Dict[str, object]
    received_at: Optional[datetime] = Field(alias="receivedAt", default=None)

    model_config = ConfigDict(populate_by_name=True)


class PlanSummary(BaseModel):
    id: PlanKey
    name: str
    price_cents: int = Field(alias="priceCents")
    interval: str = "month"
    features: List[str] = Field(default_factory=list)
    limits: Dict[str, Union[bool, int]] = Field(default_factory=dict)
    max_scan_characters: int = Field(alias="maxScanCharacters")
    certificate_retention_days: int = Field(alias="certificateRetentionDays")
    popular: bool = False

    model_config = ConfigDict(populate_by_name=True)


class PlanListResponse(BaseModel):
    plans: List[PlanSummary]

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_catalog(cls, plans: List[Dict[str, object]]) -> "PlanListResponse":
        return cls(plans=[PlanSummary.model_validate(plan) for plan in plans])


class SubscriptionOverviewResponse(BaseModel):
    status: str
    plan: PlanKey
    limits: Dict[str, Union[bool, int]]
    usage: Dict[str, int]
    credit_balance: int = Field(alias="creditBalance")
    source: str
    degraded: List[str] = Field(default_factory=list)
    generated_at: datetime = Field(alias="generatedAt")
    subscription: Optional[SubscriptionRecord] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_overview(cls, overview: SubscriptionOverview) -> "SubscriptionOverviewResponse":
        return cls(
            status=overview.status,
            plan=overview.plan,
            limits=overview.limits,
            usage=overview.usage,
            credit_balance=overview.credit_balance,
            source=overview.source,
            degraded=overview.degraded,
            generated_at=overview.generated_at,
            subscription=overview.subscription,
        )


class UsageHistoryResponse(BaseModel):
    months: int
    records: List[UsageRecord]

    model_config = ConfigDict(populate_by_name=True)


class EligibilityResponse(BaseModel):
    feature: str
    allowed: bool
    remaining: Optional[int] = None
    unlimited: bool = False
    reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: EligibilityResult) -> "EligibilityResponse":
        return cls.model_validate(result.model_dump())


class SubscriptionResponse(BaseModel):
    subscription: SubscriptionRecord

    model_config = ConfigDict(populate_by_name=True)


class CreditBalanceResponse(BaseModel):
    balance: int
    lifetime_purchased: int = Field(alias="lifetimePurchased")
    lifetime_used: int = Field(alias="lifetimeUsed")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_balance(cls, balance: CreditBalance) -> "CreditBalanceResponse":
        return cls(
            balance=balance.balance,
            lifetime_purchased=balance.lifetime_purchased,
            lifetime_used=balance.lifetime_used,
        )


class CreditTransactionListResponse(BaseModel):
    transactions: List[CreditTransaction]

    model_config = ConfigDict(populate_by_name=True)


class CreditPreferences(BaseModel):
    auto_use_credits: bool = Field(alias="autoUseCredits", default=True)

    model_config = ConfigDict(populate_by_name=True)


class CreditPreferencesUpdate(BaseModel):
    auto_use_credits: bool = Field(alias="autoUseCredits")

    model_config = ConfigDict(populate_by_name=True)
