"""
Webhook Error Processor - שגיאות שדווחו ב-webhook של WhatsApp.

השגיאה מסווגת לפי קוד. כל קטגוריה פרט ל-recipient נרשמת ככשלון של
whatsapp_api ב-circuit breaker - אלה בעיות של השירות ולא של הנמען.
"""
from __future__ import annotations

import time
from typing import Any

from sqlalchemy import select

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import AppException, ValidationException
from app.core.key_value_store import KeyValueStore
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.conversation import Message
from app.domain.processors.base import ProcessorDependencies, QueueProcessor
from app.domain.services.idempotency_service import generate_key
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)

HOOK_NAME = "wch_process_webhook_error"

RATE_LIMIT_CODES = frozenset({130429, 131048, 131056})
AUTH_ERROR_CODES = frozenset({190, 200, 10, 100})
TEMPLATE_ERROR_CODES = frozenset({132000, 132001, 132005, 132007, 132012, 132015})

RATE_LIMIT_KEY = "rate_limit_until"
DEFAULT_RATE_LIMIT_SECONDS = 60
ADMIN_ALERT_INTERVAL_SECONDS = 3600
TEMPLATE_FAILING_TTL_SECONDS = 86400


def categorize_error(code: int) -> str:
    if code in RATE_LIMIT_CODES:
        return "rate_limit"
    if code in AUTH_ERROR_CODES:
        return "auth"
    if code in TEMPLATE_ERROR_CODES:
        return "template"
    if 131000 <= code < 132000:
        return "recipient"
    return "generic"


def _error_code(payload: dict[str, Any]) -> int:
    raw = payload.get("code", payload.get("error_code", 0))
    try:
        return int(raw)
    except (TypeError, ValueError):
        return 0


class WebhookErrorProcessor(QueueProcessor):
    name = "webhook_error"
    hook_name = HOOK_NAME

    def __init__(
        self,
        deps: ProcessorDependencies,
        kv_store: KeyValueStore,
        whatsapp_breaker: CircuitBreaker,
        provider: BaseWhatsAppProvider | None = None,
    ):
        # אין breaker ברמת ה-runner: עיבוד שגיאה לא קורא ל-API, רק מדווח עליו
        super().__init__(deps)
        self.kv_store = kv_store
        self.whatsapp_breaker = whatsapp_breaker
        self.provider = provider

    @property
    def db(self):
        return self.deps.queue.db

    def idempotency_key(self, payload: dict[str, Any]) -> str:
        return generate_key(
            _error_code(payload),
            payload.get("message_id", ""),
            payload.get("timestamp", ""),
        )

    async def process(self, payload: dict[str, Any]) -> dict[str, Any]:
        code = _error_code(payload)
        if code == 0:
            raise ValidationException("error code is required", field="code")

        category = categorize_error(code)
        message = payload.get("message") or payload.get("error_message") or "Unknown error"
        logger.error(
            "Processing webhook error",
            extra_data={
                "code": code,
                "category": category,
                "title": payload.get("title"),
                "message_id": payload.get("message_id"),
            },
        )

        if category != "recipient":
            self.whatsapp_breaker.record_failure(f"[{category}] {code}: {message}")
            await self.deps.circuit_store.save(self.whatsapp_breaker)

        if category == "rate_limit":
            await self._handle_rate_limit(payload)
        elif category == "auth":
            await self._alert_admin("Authentication error", code, message)
        elif category == "template":
            await self._mark_template_failing(payload, code, message)

        await self._mark_message_failed(payload, code, message)

        await self._emit("webhook.error", {
            "code": code,
            "category": category,
            "message": message,
            "message_id": payload.get("message_id"),
        })
        return {"category": category}

    async def _handle_rate_limit(self, payload: dict[str, Any]) -> None:
        details = payload.get("error_data") or payload.get("details") or {}
        retry_after = int(details.get("retry_after") or DEFAULT_RATE_LIMIT_SECONDS)
        await self.kv_store.set(
            RATE_LIMIT_KEY,
            int(time.time()) + retry_after,
            ttl=retry_after + 60,
        )
        logger.warning("WhatsApp rate limit reported", extra_data={"retry_after": retry_after})

    async def _alert_admin(self, subject: str, code: int, message: str) -> None:
        """לכל היותר התראה אחת בשעה לכל נושא"""
        admin_phone = settings.ADMIN_ALERT_PHONE
        if not admin_phone or self.provider is None:
            logger.warning("Admin alert skipped, no alert phone configured", extra_data={"subject": subject})
            return

        dedupe_key = f"admin_alert:{generate_key(subject)}"
        if not await self.kv_store.add(dedupe_key, True, ttl=ADMIN_ALERT_INTERVAL_SECONDS):
            return

        text = f"⚠️ {subject}\nCode: {code}\nMessage: {message}"
        try:
            await self.provider.send_text(admin_phone, text)
        except AppException as exc:
            # ההתראה הבאה תנסה שוב
            await self.kv_store.delete(dedupe_key)
            logger.error(
                "Failed to send admin alert",
                extra_data={
                    "subject": subject,
                    "phone": PhoneNumberValidator.mask(admin_phone),
                    "error": str(exc),
                },
            )

    async def _mark_template_failing(self, payload: dict[str, Any], code: int, message: str) -> None:
        template_name = payload.get("template_name") or "unknown"
        await self.kv_store.set(
            f"template:failing:{template_name}",
            {"code": code, "message": message, "at": int(time.time())},
            ttl=TEMPLATE_FAILING_TTL_SECONDS,
        )
        logger.warning(
            "Template marked as failing",
            extra_data={"template": template_name, "code": code},
        )

    async def _mark_message_failed(self, payload: dict[str, Any], code: int, message: str) -> None:
        message_id = payload.get("message_id")
        if not message_id:
            return
        result = await self.db.execute(
            select(Message).where(Message.wa_message_id == message_id)
        )
        stored = result.scalar_one_or_none()
        if stored is None:
            return
        stored.status = "failed"
        stored.error_details = [{"code": code, "title": payload.get("title"), "message": message}]
        await self.db.commit()
