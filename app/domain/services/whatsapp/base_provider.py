"""
ממשק בסיסי לספק WhatsApp - Dependency Inversion.

ה-processors תלויים רק בממשק. ההגנה של circuit breaker נעשית ב-runner של
ה-processor (בדיקה לפני הקריאה ודיווח תוצאה אחריה), לא בתוך הספק.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class BaseWhatsAppProvider(ABC):
    """
    ממשק אחיד לשליחת הודעות WhatsApp.

    כל מימוש אחראי על:
    - שליחת HTTP
    - retry לשגיאות רשת ו-5xx
    - נרמול טלפון לפורמט הנדרש ע"י הספק
    """

    @abstractmethod
    async def send_text(self, to: str, text: str) -> str | None:
        """
        שליחת הודעת טקסט.

        Returns:
            מזהה ההודעה אצל הספק (wamid), אם הוחזר.

        Raises:
            WhatsAppError: בכשלון שליחה.
        """

    @abstractmethod
    async def send_template(
        self,
        to: str,
        template_name: str,
        language: str = "en",
        parameters: Optional[list[str]] = None,
    ) -> str | None:
        """
        שליחת הודעת template מאושרת (נדרש מחוץ לחלון 24 השעות).

        Raises:
            WhatsAppError: בכשלון שליחה.
        """

    @abstractmethod
    def format_text(self, html_text: str) -> str:
        """המרת טקסט HTML לפורמט הנתמך ע"י הספק."""

    @abstractmethod
    def normalize_phone(self, phone: str) -> str:
        """נרמול מספר טלפון לפורמט הנדרש ע"י הספק."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """שם הספק לשימוש בלוגים ודיאגנוסטיקה."""
