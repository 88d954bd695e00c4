"""API routes exposing billing functionality."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Response, status

from ..billing import BillingWebhookEvent, SubscriptionEventType
from ..schemas.billing import BillingWebhookPayload
from ..services.billing import get_billing_service


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/webhook", status_code=status.HTTP_204_NO_CONTENT)
async def receive_webhook(payload: BillingWebhookPayload) -> Response:
    service = get_billing_service()
    try:
        fields = {
            "event_id": payload.id,
            "event_type": SubscriptionEventType(payload.type),
            "payload": payload.payload,
        }
        if payload.received_at is not None:
            fields["received_at"] = payload.received_at
        event = BillingWebhookEvent(**fields)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        await service.handle_webhook(event)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


__all__ = ["router", "receive_webhook"]
