"""
Delivery Status Processor - עדכוני סטטוס של הודעות יוצאות (sent/delivered/read/failed)
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import select

from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.db.models.conversation import Message
from app.domain.processors.base import QueueProcessor
from app.domain.services.idempotency_service import generate_key

logger = get_logger(__name__)

HOOK_NAME = "wch_process_webhook_status"

# סטטוס מתקדם רק קדימה; failed מתקבל תמיד
STATUS_RANK: dict[str, int] = {
    "pending": 0,
    "queued": 1,
    "sent": 2,
    "delivered": 3,
    "read": 4,
}
VALID_STATUSES = {"sent", "delivered", "read", "failed"}


def should_apply(current_status: str | None, current_rank: int, new_status: str) -> bool:
    if new_status == "failed":
        return True
    if current_status == "failed":
        return False
    return STATUS_RANK[new_status] > (current_rank or 0)


class DeliveryStatusProcessor(QueueProcessor):
    name = "delivery_status"
    hook_name = HOOK_NAME

    @property
    def db(self):
        return self.deps.queue.db

    def idempotency_key(self, payload: dict[str, Any]) -> str:
        message_id = payload.get("message_id")
        status = payload.get("status")
        if not message_id or not status:
            raise ValidationException("message_id and status are required")
        return generate_key(message_id, status)

    async def process(self, payload: dict[str, Any]) -> dict[str, Any]:
        status = str(payload["status"]).lower()
        if status not in VALID_STATUSES:
            raise ValidationException(f"Unknown delivery status: {status}", field="status")

        result = await self.db.execute(
            select(Message).where(Message.wa_message_id == payload["message_id"])
        )
        message = result.scalar_one_or_none()
        if message is None:
            logger.info(
                "Status update for unknown message",
                extra_data={"message_id": payload["message_id"], "status": status},
            )
            return {"applied": False, "reason": "unknown_message"}

        if not should_apply(message.status, message.status_rank, status):
            logger.debug(
                "Ignoring status regression",
                extra_data={
                    "message_id": payload["message_id"],
                    "current": message.status,
                    "received": status,
                },
            )
            return {"applied": False, "reason": "regression"}

        previous = message.status
        message.status = status
        if status == "failed":
            message.error_details = payload.get("errors") or []
        else:
            message.status_rank = STATUS_RANK[status]
        await self.db.commit()

        await self._emit("message.status_updated", {
            "message_id": payload["message_id"],
            "previous_status": previous,
            "status": status,
            "recipient_id": payload.get("recipient_id"),
        })
        return {"applied": True, "status": status}
