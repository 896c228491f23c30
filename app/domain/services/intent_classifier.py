"""
Intent Classifier - סיווג כוונת הודעה נכנסת.

KeywordIntentClassifier מבוסס regex בלבד. מסווג מבוסס NLP יכול להחליף
אותו דרך הממשק בלי שינוי ב-processor.
"""
from __future__ import annotations

import enum
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional


class Intent(str, enum.Enum):
    GREETING = "GREETING"
    START = "START"
    BROWSE = "BROWSE"
    SEARCH = "SEARCH"
    VIEW_CATEGORY = "VIEW_CATEGORY"
    VIEW_PRODUCT = "VIEW_PRODUCT"
    ADD_TO_CART = "ADD_TO_CART"
    VIEW_CART = "VIEW_CART"
    CHECKOUT = "CHECKOUT"
    CONFIRM_ORDER = "CONFIRM_ORDER"
    HUMAN_SUPPORT = "HUMAN_SUPPORT"
    HELP = "HELP"
    UNKNOWN = "UNKNOWN"


@dataclass
class IntentResult:
    intent: Intent
    confidence: float
    entities: dict[str, Any] = field(default_factory=dict)


class IntentClassifier(ABC):
    @abstractmethod
    async def classify(self, text: str, context: Optional[dict[str, Any]] = None) -> IntentResult:
        ...


# הסדר חשוב - הראשון שתואם מנצח
_PATTERNS: list[tuple[Intent, re.Pattern[str], float]] = [
    (Intent.GREETING, re.compile(r"^(hi|hello|hey|good\s*(morning|afternoon|evening))\b", re.I), 0.95),
    (Intent.START, re.compile(r"^(start|menu|/start)\b", re.I), 0.95),
    (Intent.HUMAN_SUPPORT, re.compile(r"(human|agent|person|representative|speak\s+to)", re.I), 0.9),
    (Intent.HELP, re.compile(r"\b(help|support|assist)\b", re.I), 0.9),
    (Intent.ADD_TO_CART, re.compile(r"\b(add|put)\b.*\b(cart|basket|bag)\b", re.I), 0.9),
    (Intent.CONFIRM_ORDER, re.compile(r"^(confirm|yes,?\s*confirm|place\s+order)\b", re.I), 0.9),
    (Intent.CHECKOUT, re.compile(r"\b(checkout|check\s+out|buy|purchase|pay)\b", re.I), 0.9),
    (Intent.VIEW_CART, re.compile(r"\b(my\s+)?(cart|basket|bag)\b", re.I), 0.9),
    (Intent.VIEW_CATEGORY, re.compile(r"\bcategor(y|ies)\b", re.I), 0.85),
    (Intent.BROWSE, re.compile(r"\b(show|browse|see|view)\b.*\b(products?|catalog|items?|collection)\b", re.I), 0.9),
    (Intent.SEARCH, re.compile(r"\b(search|find|looking\s+for)\s+(?P<query>.+)", re.I), 0.85),
]

# מזהי כפתורים אינטראקטיביים: "<action>:<id>"
_BUTTON_PREFIXES: dict[str, Intent] = {
    "product": Intent.VIEW_PRODUCT,
    "category": Intent.VIEW_CATEGORY,
    "add": Intent.ADD_TO_CART,
    "cart": Intent.VIEW_CART,
    "checkout": Intent.CHECKOUT,
    "confirm": Intent.CONFIRM_ORDER,
    "menu": Intent.START,
    "support": Intent.HUMAN_SUPPORT,
}

_QUANTITY = re.compile(r"\b(\d{1,3})\s*(x|pcs|pieces|units)?\b", re.I)


class KeywordIntentClassifier(IntentClassifier):
    async def classify(self, text: str, context: Optional[dict[str, Any]] = None) -> IntentResult:
        context = context or {}
        button_id = context.get("button_id")
        if button_id:
            prefix, _, value = str(button_id).partition(":")
            intent = _BUTTON_PREFIXES.get(prefix.lower())
            if intent is not None:
                entities = {"id": value} if value else {}
                return IntentResult(intent, 1.0, entities)

        text = (text or "").strip()
        if not text:
            return IntentResult(Intent.UNKNOWN, 0.0)

        for intent, pattern, confidence in _PATTERNS:
            match = pattern.search(text)
            if not match:
                continue
            entities: dict[str, Any] = {}
            if intent == Intent.SEARCH and match.groupdict().get("query"):
                entities["query"] = match.group("query").strip()
            if intent == Intent.ADD_TO_CART:
                quantity = _QUANTITY.search(text)
                if quantity:
                    entities["quantity"] = int(quantity.group(1))
            return IntentResult(intent, confidence, entities)

        return IntentResult(Intent.UNKNOWN, 0.3)
