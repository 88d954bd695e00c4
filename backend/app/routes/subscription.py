"""Routes exposing plans, the subscription overview and usage history."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..entitlements import list_available_plans
from ..schemas.billing import (
    EligibilityResponse,
    PlanListResponse,
    SubscriptionOverviewResponse,
    SubscriptionResponse,
    UsageHistoryResponse,
)
from ..services.billing import get_billing_service
from ..services.entitlements import (
    get_credit_ledger,
    get_entitlement_config,
    get_entitlement_engine,
    get_subscription_repository,
    get_usage_counter,
)
from ..services.subscription_status import build_subscription_overview
from .dependencies import get_request_user

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


@router.get("/plans", response_model=PlanListResponse)
async def list_plans() -> PlanListResponse:
    return PlanListResponse.from_catalog(list_available_plans())


@router.get("/current", response_model=SubscriptionOverviewResponse)
async def get_current_subscription(
    *,
    current_user=Depends(get_request_user),
) -> SubscriptionOverviewResponse:
    """Return plan, limits, usage and credits; degrades rather than failing."""

    config = get_entitlement_config()
    overview = await build_subscription_overview(
        str(current_user.id),
        subscriptions=get_subscription_repository(),
        usage=get_usage_counter(),
        ledger=get_credit_ledger(),
        dependency_timeout=config.status_dependency_timeout,
        total_timeout=config.status_total_timeout,
    )
    return SubscriptionOverviewResponse.from_overview(overview)


@router.get("/usage", response_model=UsageHistoryResponse)
async def get_usage_history(
    months: int = Query(6, ge=1, le=24),
    *,
    current_user=Depends(get_request_user),
) -> UsageHistoryResponse:
    records = await get_usage_counter().history(str(current_user.id), months=months)
    return UsageHistoryResponse(months=months, records=list(records))


@router.get("/eligibility/{feature}", response_model=EligibilityResponse)
async def get_feature_eligibility(
    feature: str,
    *,
    current_user=Depends(get_request_user),
) -> EligibilityResponse:
    result = await get_entitlement_engine().check_eligibility(str(current_user.id), feature)
    return EligibilityResponse.from_result(result)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    *,
    current_user=Depends(get_request_user),
) -> SubscriptionResponse:
    try:
        subscription = await get_billing_service().cancel_at_period_end(str(current_user.id))
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SubscriptionResponse(subscription=subscription)


@router.post("/reactivate", response_model=SubscriptionResponse)
async def reactivate_subscription(
    *,
    current_user=Depends(get_request_user),
) -> SubscriptionResponse:
    try:
        subscription = await get_billing_service().reactivate(str(current_user.id))
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SubscriptionResponse(subscription=subscription)


__all__ = [
    "router",
    "cancel_subscription",
    "get_current_subscription",
    "get_feature_eligibility",
    "get_usage_history",
    "list_plans",
    "reactivate_subscription",
]
