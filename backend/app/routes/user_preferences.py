"""Routes for managing user-specific credit preferences."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..schemas.billing import CreditPreferences, CreditPreferencesUpdate

from .dependencies import get_request_user

router = APIRouter(prefix="/api/users/me", tags=["credit-preferences"])


@router.get("/credit_prefs", response_model=CreditPreferences)
async def get_credit_preferences(
    *,
    current_user=Depends(get_request_user),
) -> CreditPreferences:
    """Return whether credits are spent automatically once plan quota runs out."""
    from ..services.entitlements import get_credit_preferences as get_repository

    enabled = await get_repository().get_auto_use_credits(str(current_user.id))
    return CreditPreferences(auto_use_credits=enabled)


@router.put("/credit_prefs", response_model=CreditPreferences)
async def update_credit_preferences(
    payload: CreditPreferencesUpdate,
    *,
    current_user=Depends(get_request_user),
) -> CreditPreferences:
    """Turn automatic credit spending on or off for the authenticated user."""
    from ..services.entitlements import get_credit_preferences as get_repository

    try:
        enabled = await get_repository().set_auto_use_credits(
            str(current_user.id), payload.auto_use_credits
        )
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return CreditPreferences(auto_use_credits=enabled)


__all__ = [
    "router",
    "get_credit_preferences",
    "update_credit_preferences",
]
