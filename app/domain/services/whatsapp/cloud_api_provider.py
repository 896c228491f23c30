"""
WhatsApp Cloud API Provider - מימוש BaseWhatsAppProvider מעל Graph API.

POST {WHATSAPP_CLOUD_API_URL}/{phone_id}/messages עם Bearer token.
retry עם exponential backoff לשגיאות זמניות (5xx / 429 / timeout / רשת).
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx

from app.core.config import settings
from app.core.exceptions import WhatsAppError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator, convert_html_to_whatsapp
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)


class CloudApiProvider(BaseWhatsAppProvider):
    """ספק WhatsApp Cloud API"""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        phone_number_id: str | None = None,
        access_token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.WHATSAPP_CLOUD_API_URL).rstrip("/")
        self._phone_number_id = phone_number_id or settings.WHATSAPP_CLOUD_API_PHONE_ID
        self._access_token = access_token or settings.WHATSAPP_CLOUD_API_TOKEN
        self._transport = transport
        self._max_retries = settings.WHATSAPP_MAX_RETRIES
        self._transient_status_codes = {
            int(code.strip())
            for code in settings.WHATSAPP_TRANSIENT_STATUS_CODES.split(",")
            if code.strip()
        }

    @property
    def provider_name(self) -> str:
        return "cloud_api"

    # ── retry helper פנימי ──

    async def _post_with_retry(self, payload: dict[str, Any], operation_name: str) -> str | None:
        """שליחת בקשה ל-Graph API עם retry. מחזיר את ה-wamid."""
        phone_masked = PhoneNumberValidator.mask(payload.get("to", ""))
        url = f"{self._base_url}/{self._phone_number_id}/messages"
        headers = {"Authorization": f"Bearer {self._access_token}"}

        async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
            for attempt in range(self._max_retries):
                try:
                    response = await client.post(url, json=payload, headers=headers)
                    if response.status_code == 200:
                        messages = response.json().get("messages") or [{}]
                        return messages[0].get("id")

                    if (
                        response.status_code in self._transient_status_codes
                        and attempt < self._max_retries - 1
                    ):
                        backoff = 2 ** attempt
                        logger.warning(
                            f"Transient error in {operation_name}, retrying",
                            extra_data={
                                "phone": phone_masked,
                                "status_code": response.status_code,
                                "attempt": attempt + 1,
                                "max_retries": self._max_retries,
                                "backoff_seconds": backoff,
                            },
                        )
                        await asyncio.sleep(backoff)
                        continue

                    raise WhatsAppError.from_response("messages", response)
                except httpx.TimeoutException:
                    if attempt < self._max_retries - 1:
                        backoff = 2 ** attempt
                        logger.warning(
                            f"{operation_name} timeout, retrying",
                            extra_data={
                                "phone": phone_masked,
                                "attempt": attempt + 1,
                                "backoff_seconds": backoff,
                            },
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise WhatsAppError(
                        message="messages timeout after retries",
                        details={"timeout": True, "attempts": self._max_retries},
                    )
                except httpx.RequestError as exc:
                    if attempt < self._max_retries - 1:
                        backoff = 2 ** attempt
                        logger.warning(
                            f"Network error in {operation_name}, retrying",
                            extra_data={
                                "phone": phone_masked,
                                "error": str(exc),
                                "attempt": attempt + 1,
                                "backoff_seconds": backoff,
                            },
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise WhatsAppError(
                        message=f"messages network error: {exc}",
                        details={"network_error": True, "attempts": self._max_retries},
                    )
        return None

    # ── שליחת הודעות ──

    async def send_text(self, to: str, text: str) -> str | None:
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": self.normalize_phone(to),
            "type": "text",
            "text": {"preview_url": False, "body": self.format_text(text)},
        }
        return await self._post_with_retry(payload, "send_text")

    async def send_template(
        self,
        to: str,
        template_name: str,
        language: str = "en",
        parameters: Optional[list[str]] = None,
    ) -> str | None:
        template: dict[str, Any] = {"name": template_name, "language": {"code": language}}
        if parameters:
            template["components"] = [{
                "type": "body",
                "parameters": [{"type": "text", "text": str(p)} for p in parameters],
            }]
        payload = {
            "messaging_product": "whatsapp",
            "to": self.normalize_phone(to),
            "type": "template",
            "template": template,
        }
        return await self._post_with_retry(payload, "send_template")

    def format_text(self, html_text: str) -> str:
        return convert_html_to_whatsapp(html_text)

    def normalize_phone(self, phone: str) -> str:
        """Graph API מצפה לספרות בלבד (בלי +)"""
        return PhoneNumberValidator.normalize(phone).lstrip("+")
