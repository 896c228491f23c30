"""
אימות webhooks של שערי תשלום - רץ כ-dependency לפני ה-handler.

סדר הבדיקות: גודל payload (413) -> שער מוכר (400) -> חתימה ו-timestamp (401)
-> JSON תקין (400). ה-handler מקבל רק בקשות מאומתות.

שימוש:
    @router.post("/payments/{gateway}")
    async def payment_webhook(
        webhook: VerifiedPaymentWebhook = Depends(verify_payment_webhook),
    ):
        ...
"""
import json
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, Request, status

from app.core.config import settings
from app.core.exceptions import PayloadTooLargeError
from app.core.logging import get_logger
from app.domain.services.payment_gateways import (
    SUPPORTED_GATEWAYS,
    PaymentGateway,
    get_gateway,
)

logger = get_logger(__name__)


@dataclass
class VerifiedPaymentWebhook:
    gateway: PaymentGateway
    payload: dict[str, Any]
    body: bytes


async def read_limited_body(request: Request, limit: int | None = None) -> bytes:
    """קריאת ה-body עם תקרת גודל. Raises PayloadTooLargeError."""
    limit = limit or settings.WEBHOOK_MAX_PAYLOAD_BYTES
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > limit:
        raise PayloadTooLargeError(int(declared), limit)
    body = await request.body()
    if len(body) > limit:
        raise PayloadTooLargeError(len(body), limit)
    return body


async def verify_payment_webhook(
    request: Request,
    gateway: str | None = None,
) -> VerifiedPaymentWebhook:
    """
    gateway מגיע מה-path (/payments/{gateway}), מ-?gateway= או מ-X-Payment-Gateway.

    Raises:
        PayloadTooLargeError: 413
        HTTPException: 400 לשער חסר / לא מוכר או JSON לא תקין
        SignatureVerificationError / WebhookTimestampError: 401
    """
    body = await read_limited_body(request)

    name = gateway or request.headers.get("x-payment-gateway")
    handler = get_gateway(name)
    if handler is None:
        logger.warning("Payment webhook for unknown gateway", extra_data={"gateway": name})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown payment gateway. Supported: {', '.join(SUPPORTED_GATEWAYS)}",
        )

    headers = {key.lower(): value for key, value in request.headers.items()}
    handler.verify(body, headers)

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload")

    return VerifiedPaymentWebhook(gateway=handler, payload=payload, body=body)
