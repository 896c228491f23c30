"""
Inbound Message Processor - הודעת לקוח נכנסת מ-WhatsApp.

שומר את ההודעה, מסווג כוונה ומפעיל את האירוע המתאים על שיחת הלקוח.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import select

from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator, TextSanitizer
from app.db.models.conversation import Conversation, Message
from app.domain.processors.base import ProcessorDependencies, QueueProcessor
from app.domain.services.intent_classifier import Intent, IntentClassifier, KeywordIntentClassifier
from app.state_machine import ConversationEvent, StateManager

logger = get_logger(__name__)

HOOK_NAME = "wch_process_webhook_message"

INTENT_EVENTS: dict[Intent, ConversationEvent] = {
    Intent.GREETING: ConversationEvent.START,
    Intent.START: ConversationEvent.START,
    Intent.BROWSE: ConversationEvent.START,
    Intent.SEARCH: ConversationEvent.SEARCH,
    Intent.VIEW_CATEGORY: ConversationEvent.VIEW_CATEGORY,
    Intent.VIEW_PRODUCT: ConversationEvent.VIEW_PRODUCT,
    Intent.ADD_TO_CART: ConversationEvent.ADD_TO_CART,
    Intent.VIEW_CART: ConversationEvent.VIEW_CART,
    Intent.CHECKOUT: ConversationEvent.START_CHECKOUT,
    Intent.CONFIRM_ORDER: ConversationEvent.CONFIRM_ORDER,
    Intent.HUMAN_SUPPORT: ConversationEvent.REQUEST_HUMAN,
    Intent.HELP: ConversationEvent.REQUEST_HUMAN,
}

_MEDIA_TYPES = ("image", "video", "document", "audio", "sticker")


def extract_text(message: dict[str, Any]) -> tuple[str, str | None]:
    """
    חילוץ טקסט ומזהה כפתור מהודעה לפי סוגה.

    Returns:
        (text, button_id) - button_id רק לכפתורים ורשימות אינטראקטיביות
    """
    message_type = message.get("type", "text")

    if message_type == "text":
        return (message.get("text") or {}).get("body", ""), None

    if message_type == "button":
        button = message.get("button") or {}
        return button.get("text", ""), button.get("payload")

    if message_type == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return reply.get("title", ""), reply.get("id")

    if message_type == "location":
        location = message.get("location") or {}
        if location.get("name"):
            return location["name"], None
        if "latitude" in location and "longitude" in location:
            return f"{location['latitude']},{location['longitude']}", None
        return "", None

    if message_type in _MEDIA_TYPES:
        return (message.get(message_type) or {}).get("caption", ""), None

    return "", None


class InboundMessageProcessor(QueueProcessor):
    name = "inbound_message"
    hook_name = HOOK_NAME

    def __init__(
        self,
        deps: ProcessorDependencies,
        classifier: IntentClassifier | None = None,
    ):
        super().__init__(deps)
        self.classifier = classifier or KeywordIntentClassifier()

    @property
    def db(self):
        return self.deps.queue.db

    def idempotency_key(self, payload: dict[str, Any]) -> str:
        message_id = payload.get("message_id")
        if not message_id:
            raise ValidationException("message_id is required", field="message_id")
        return str(message_id)

    async def process(self, payload: dict[str, Any]) -> dict[str, Any]:
        sender = payload.get("from")
        if not sender:
            raise ValidationException("from is required", field="from")

        phone = PhoneNumberValidator.normalize(str(sender))
        message = payload.get("message") or {
            "type": payload.get("type", "text"),
            "text": {"body": payload.get("text", "")},
        }
        text, button_id = extract_text(message)
        text = TextSanitizer.sanitize(text)

        state_manager = StateManager(self.db)
        conversation = await state_manager.get_or_create_conversation(phone)
        stored = await self._store_message(conversation, payload["message_id"], message, text)

        intent = await self.classifier.classify(
            text,
            {"button_id": button_id, "state": conversation.state},
        )
        stored.intent = intent.intent.value

        event = INTENT_EVENTS.get(intent.intent)
        if event is None:
            await self.db.commit()
            logger.info(
                "Inbound message without actionable intent",
                extra_data={
                    "phone": PhoneNumberValidator.mask(phone),
                    "intent": intent.intent.value,
                    "state": conversation.state,
                },
            )
            return {"intent": intent.intent.value, "transition": None}

        transition = await state_manager.apply_event(
            conversation,
            event,
            {"last_intent": intent.intent.value, "entities": intent.entities},
        )
        await self._emit("conversation.event", {
            "customer_phone": phone,
            "message_id": payload["message_id"],
            "intent": intent.intent.value,
            "event": event.value,
            "success": transition.success,
            "from_state": transition.from_state,
            "to_state": transition.to_state,
            "action": transition.action,
        })
        return {"intent": intent.intent.value, "transition": transition.to_state}

    async def _store_message(
        self,
        conversation: Conversation,
        wa_message_id: str,
        message: dict[str, Any],
        text: str,
    ) -> Message:
        """הודעה שכבר נשמרה בניסיון קודם נטענת מחדש"""
        result = await self.db.execute(
            select(Message).where(Message.wa_message_id == wa_message_id)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing

        stored = Message(
            conversation_id=conversation.id,
            wa_message_id=wa_message_id,
            direction="inbound",
            message_type=message.get("type", "text"),
            content={"text": text, "raw": message},
        )
        self.db.add(stored)
        await self.db.flush()
        return stored
