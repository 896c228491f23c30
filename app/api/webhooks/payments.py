"""
Payment Webhooks - Stripe / Razorpay / PIX.

האימות רץ ב-dependency (verify_payment_webhook). כאן: claim על event id
ב-scope payment, החלת האירוע על ההזמנה ו-complete. שער תשלום שולח שוב
אירוע שלא קיבל 2xx, ולכן כל כשלון משחרר את ה-claim ומחזיר 500.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from app.api.dependencies.payment_webhook_auth import VerifiedPaymentWebhook, verify_payment_webhook
from app.api.dependencies.services import get_services
from app.core.config import settings
from app.core.logging import get_logger
from app.db.models.idempotency_claim import IdempotencyScope
from app.domain.container import ServiceContainer

logger = get_logger(__name__)

router = APIRouter()

_RESPONSES = {
    200: {"description": "האירוע עובד, נתפס כבר או שעובד בעבר"},
    400: {"description": "שער לא מוכר או JSON לא תקין"},
    401: {"description": "חתימה או timestamp לא תקינים"},
    413: {"description": "payload גדול מדי"},
    500: {"description": "כשלון בעיבוד - השער ישלח שוב"},
}


async def _process(webhook: VerifiedPaymentWebhook, services: ServiceContainer):
    gateway = webhook.gateway
    try:
        event_id = gateway.event_id(webhook.payload)
    except (AttributeError, TypeError, ValueError) as exc:
        # JSON תקין במבנה לא צפוי - אין מזהה אירוע ל-claim
        logger.warning(
            "Payment webhook payload has no usable event id",
            extra_data={"gateway": gateway.name, "error": str(exc)},
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payment event")
    log_data = {"gateway": gateway.name, "event_id": event_id}

    claim = await services.idempotency.claim(
        event_id,
        IdempotencyScope.PAYMENT,
        stale_after_seconds=settings.PAYMENT_CLAIM_STALE_SECONDS,
    )
    if not claim.is_claimed:
        logger.info("Duplicate payment webhook", extra_data={**log_data, "claim": claim.value})
        return {"status": claim.value, "event_id": event_id}

    try:
        event = gateway.parse_event(webhook.payload)
        result = await services.payment_events.handle(event)
        await services.idempotency.complete(event_id, IdempotencyScope.PAYMENT)
    except Exception as exc:
        await services.db.rollback()
        await services.idempotency.release(event_id, IdempotencyScope.PAYMENT)
        logger.error(
            "Payment webhook processing failed, claim released",
            extra_data={**log_data, "error": str(exc)},
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"status": "error", "event_id": event_id})

    await services.event_bus.emit("payment.webhook_processed", {
        **log_data,
        "event_type": event.event_type,
        "result": result["status"],
    })
    return {**result, "event_id": event_id}


@router.post(
    "",
    summary="Payment Webhook",
    description="webhook תשלום - השער נקבע לפי ?gateway= או X-Payment-Gateway.",
    responses=_RESPONSES,
)
async def payment_webhook(
    webhook: VerifiedPaymentWebhook = Depends(verify_payment_webhook),
    services: ServiceContainer = Depends(get_services),
):
    return await _process(webhook, services)


@router.post(
    "/{gateway}",
    summary="Payment Webhook (per gateway)",
    description="webhook תשלום לשער מסוים: stripe / razorpay / pix.",
    responses=_RESPONSES,
)
async def gateway_payment_webhook(
    webhook: VerifiedPaymentWebhook = Depends(verify_payment_webhook),
    services: ServiceContainer = Depends(get_services),
):
    return await _process(webhook, services)
