"""
WhatsApp Cloud API Webhook - אימות, claim והכנסה לתור.

ה-endpoint לא מעבד דבר בעצמו: כל הודעה / סטטוס / שגיאה נתפסים ב-scope
webhook עם claim token חדש ונכנסים לתור כ-job שנושא את אותו token.
ה-processor תופס מחדש עם ה-token ולכן ממשיך את אותה בעלות.
Meta שולחת שוב כל webhook שלא קיבל 200 - כפילויות נספרות ולא נכנסות לתור.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from app.api.dependencies.payment_webhook_auth import read_limited_body
from app.api.dependencies.services import get_services
from app.core.config import settings
from app.core.exceptions import SignatureVerificationError, WebhookTimestampError
from app.core.logging import get_logger
from app.db.models.idempotency_claim import IdempotencyScope
from app.domain.container import ServiceContainer
from app.domain.processors.delivery_status import HOOK_NAME as STATUS_HOOK
from app.domain.processors.inbound_message import HOOK_NAME as MESSAGE_HOOK
from app.domain.processors.webhook_error import HOOK_NAME as ERROR_HOOK
from app.domain.services.priority_queue import JobPriority

logger = get_logger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "X-Hub-Signature-256"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"


@dataclass
class WebhookItem:
    hook_name: str
    args: dict[str, Any]
    priority: JobPriority


# ──────────────────────────────────────────────
#  אימות webhook - Meta verification & signature
# ──────────────────────────────────────────────


@router.get(
    "",
    summary="WhatsApp Webhook Verification",
    description="אימות webhook מול Meta - מחזיר hub.challenge.",
    response_class=PlainTextResponse,
)
async def verify_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
) -> str:
    expected = settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN
    if (
        hub_mode == "subscribe"
        and hub_challenge
        and expected
        and hub_verify_token
        and hmac.compare_digest(hub_verify_token, expected)
    ):
        logger.info("WhatsApp webhook verified")
        return hub_challenge
    logger.warning("WhatsApp webhook verification failed", extra_data={"hub_mode": hub_mode})
    raise HTTPException(status_code=403, detail="Verification failed")


def verify_signature(body: bytes, signature_header: str | None, secret: str) -> bool:
    """HMAC-SHA256 של Meta על ה-body, בפורמט sha256=<hex>"""
    if not secret or not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature_header[len("sha256="):], expected)


def check_timestamp(raw: str, now: float | None = None) -> None:
    """
    חלון replay אופציונלי - נבדק רק אחרי חתימה תקינה.

    Raises:
        WebhookTimestampError: timestamp לא מספרי או מחוץ לחלון
    """
    now = time.time() if now is None else now
    try:
        sent_at = float(raw)
    except ValueError:
        raise WebhookTimestampError("whatsapp", float("inf"), status_code=403)
    skew = abs(now - sent_at)
    if skew > settings.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS:
        raise WebhookTimestampError("whatsapp", skew, status_code=403)


# ──────────────────────────────────────────────
#  חילוץ אירועים מפורמט Cloud API
# ──────────────────────────────────────────────


def extract_items(payload: dict[str, Any]) -> list[WebhookItem]:
    """entry[] -> changes[] -> value.{messages, statuses, errors}"""
    items: list[WebhookItem] = []
    for entry in payload.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            metadata = value.get("metadata") or {}
            contacts = value.get("contacts") or []
            names = {
                contact.get("wa_id"): (contact.get("profile") or {}).get("name")
                for contact in contacts
            }

            for message in value.get("messages") or []:
                items.append(WebhookItem(
                    MESSAGE_HOOK,
                    {
                        "message_id": message.get("id"),
                        "from": message.get("from"),
                        "type": message.get("type"),
                        "timestamp": message.get("timestamp"),
                        "message": message,
                        "contact_name": names.get(message.get("from")),
                        "phone_number_id": metadata.get("phone_number_id"),
                    },
                    JobPriority.CRITICAL,
                ))

            for status in value.get("statuses") or []:
                items.append(WebhookItem(
                    STATUS_HOOK,
                    {
                        "message_id": status.get("id"),
                        "status": status.get("status"),
                        "timestamp": status.get("timestamp"),
                        "recipient_id": status.get("recipient_id"),
                        "errors": status.get("errors") or [],
                    },
                    JobPriority.NORMAL,
                ))
                # שגיאה על הודעה יוצאת עוברת גם לסיווג שגיאות
                for error in status.get("errors") or []:
                    items.append(_error_item(error, status.get("id"), status.get("timestamp")))

            for error in value.get("errors") or []:
                items.append(_error_item(error, None, entry.get("time")))
    return items


def _error_item(error: dict[str, Any], message_id: str | None, timestamp: Any) -> WebhookItem:
    return WebhookItem(
        ERROR_HOOK,
        {
            "code": error.get("code"),
            "title": error.get("title"),
            "message": error.get("message") or (error.get("error_data") or {}).get("details"),
            "error_data": error.get("error_data") or {},
            "message_id": message_id,
            "timestamp": timestamp,
        },
        JobPriority.URGENT,
    )


# ──────────────────────────────────────────────
#  Webhook handler ראשי
# ──────────────────────────────────────────────


@router.post(
    "",
    summary="WhatsApp Webhook",
    description="קבלת הודעות, סטטוסים ושגיאות מ-WhatsApp Cloud API והכנסתם לתור.",
    responses={
        200: {"description": "האירועים נקלטו (accepted / duplicates)"},
        400: {"description": "JSON לא תקין"},
        403: {"description": "חתימה או timestamp לא תקינים"},
        413: {"description": "payload גדול מדי"},
    },
)
async def receive_webhook(
    request: Request,
    services: ServiceContainer = Depends(get_services),
):
    body = await read_limited_body(request)

    secret = settings.WHATSAPP_CLOUD_API_APP_SECRET
    if not secret:
        logger.error("WHATSAPP_CLOUD_API_APP_SECRET is not configured, rejecting webhook")
    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), secret):
        logger.warning("Invalid WhatsApp webhook signature")
        raise SignatureVerificationError("whatsapp", status_code=403)

    timestamp = request.headers.get(TIMESTAMP_HEADER)
    if timestamp is not None:
        check_timestamp(timestamp)

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    accepted = duplicates = rejected = 0
    taken: list[str] = []
    try:
        for item in extract_items(payload):
            processor = services.registry.get(item.hook_name)
            try:
                key = processor.idempotency_key(item.args)
            except Exception as exc:
                # אירוע בלי מזהה לא יעבור גם ב-processor - לא נכנס לתור
                logger.warning(
                    "Skipping webhook item without idempotency key",
                    extra_data={"hook": item.hook_name, "error": str(exc)},
                )
                rejected += 1
                continue

            token = uuid.uuid4().hex
            claim = await services.idempotency.claim(key, IdempotencyScope.WEBHOOK, owner_token=token)
            if not claim.is_claimed:
                duplicates += 1
                continue
            taken.append(key)

            await services.dispatcher.dispatch(
                item.hook_name,
                item.args,
                priority=item.priority,
                claim_token=token,
            )
            accepted += 1
    except Exception as exc:
        await services.db.rollback()
        for key in taken:
            await services.idempotency.release(key, IdempotencyScope.WEBHOOK)
        logger.error(
            "WhatsApp webhook ingestion failed, claims released",
            extra_data={"released": len(taken), "error": str(exc)},
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"status": "error"})

    if accepted or duplicates:
        logger.info(
            "WhatsApp webhook ingested",
            extra_data={"accepted": accepted, "duplicates": duplicates, "rejected": rejected},
        )
    return {"status": "ok", "accepted": accepted, "duplicates": duplicates}
