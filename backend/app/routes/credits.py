"""Routes exposing the credit balance and transaction history."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from ..schemas.billing import CreditBalanceResponse, CreditTransactionListResponse
from ..services.entitlements import get_credit_ledger
from .dependencies import get_request_user

router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("/balance", response_model=CreditBalanceResponse)
async def get_credit_balance(
    *,
    current_user=Depends(get_request_user),
) -> CreditBalanceResponse:
    balance = await get_credit_ledger().get_balance_record(str(current_user.id))
    return CreditBalanceResponse.from_balance(balance)


@router.get("/transactions", response_model=CreditTransactionListResponse)
async def list_credit_transactions(
    limit: int = Query(50, ge=1, le=200),
    *,
    current_user=Depends(get_request_user),
) -> CreditTransactionListResponse:
    transactions = await get_credit_ledger().list_transactions(str(current_user.id), limit=limit)
    return CreditTransactionListResponse(transactions=list(transactions))


__all__ = ["router", "get_credit_balance", "list_credit_transactions"]
