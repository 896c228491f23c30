"""
WhatsApp Provider Abstraction Layer

שכבת הפשטה לשליחת הודעות WhatsApp - ה-processors תלויים רק ב-BaseWhatsAppProvider.
"""
from __future__ import annotations

import threading

from app.core.logging import get_logger
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider
from app.domain.services.whatsapp.cloud_api_provider import CloudApiProvider

logger = get_logger(__name__)

_provider: BaseWhatsAppProvider | None = None
_lock = threading.Lock()


def get_whatsapp_provider() -> BaseWhatsAppProvider:
    """ספק WhatsApp ברירת מחדל (singleton לתהליך)"""
    global _provider
    if _provider is None:
        with _lock:
            if _provider is None:
                _provider = CloudApiProvider()
                logger.info(
                    "WhatsApp provider initialized",
                    extra_data={"provider": _provider.provider_name},
                )
    return _provider


def reset_providers() -> None:
    """איפוס ספקים - לשימוש בבדיקות בלבד."""
    global _provider
    with _lock:
        _provider = None


__all__ = [
    "BaseWhatsAppProvider",
    "CloudApiProvider",
    "get_whatsapp_provider",
    "reset_providers",
]
