"""
Order Notification Processor - התראות WhatsApp על הזמנות (אישור, סטטוס, משלוח, מסירה).

לפני השליחה נבדקים opt-out ושעות שקטות באזור הזמן של הלקוח - דילוג
אינו כשלון ואינו retry. כל ניסיון נרשם ב-notification_logs.
"""
from __future__ import annotations

from datetime import datetime, time as dt_time, timezone
from typing import Any, Callable
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import AppException, OrderNotFoundError, ValidationException
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.customer_preference import CustomerPreference
from app.db.models.idempotency_claim import IdempotencyScope
from app.db.models.notification_log import NotificationLog
from app.db.models.order import Order
from app.domain.processors.base import ProcessorDependencies, QueueProcessor
from app.domain.services.idempotency_service import generate_key
from app.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)

HOOK_NAME = "wch_send_order_notification"

TYPE_CONFIRMATION = "order_confirmation"
TYPE_STATUS_UPDATE = "status_update"
TYPE_SHIPPING = "shipping_update"
TYPE_DELIVERY = "delivery_confirmation"
NOTIFICATION_TYPES = (TYPE_CONFIRMATION, TYPE_STATUS_UPDATE, TYPE_SHIPPING, TYPE_DELIVERY)

SKIPPED_OPTED_OUT = "SKIPPED_OPTED_OUT"
SKIPPED_QUIET_HOURS = "SKIPPED_QUIET_HOURS"

STATUS_TEMPLATES = {
    "processing": "order_processing",
    "on_hold": "order_on_hold",
    "shipped": "order_shipped",
    "completed": "order_completed",
    "cancelled": "order_cancelled",
    "refunded": "order_refunded",
}

# (text, emoji, action_needed)
STATUS_INFO = {
    "processing": ("Being prepared", "📦", ""),
    "on_hold": ("On hold", "⏸️", "Please contact support"),
    "shipped": ("Shipped", "🚚", ""),
    "completed": ("Delivered", "✅", ""),
    "cancelled": ("Cancelled", "❌", "Contact support for refund"),
    "refunded": ("Refunded", "💰", ""),
}

CARRIER_NAMES = {
    "fedex": "FedEx",
    "ups": "UPS",
    "usps": "USPS",
    "dhl": "DHL",
    "aramex": "Aramex",
    "bluedart": "Blue Dart",
    "dtdc": "DTDC",
}

TRACKING_URLS = {
    "fedex": "https://www.fedex.com/fedextrack/?trknbr={}",
    "ups": "https://www.ups.com/track?tracknum={}",
    "usps": "https://tools.usps.com/go/TrackConfirmAction?tLabels={}",
    "dhl": "https://www.dhl.com/en/express/tracking.html?AWB={}",
    "aramex": "https://www.aramex.com/track/shipments?ShipmentNumber={}",
}

DEFAULT_ESTIMATED_DELIVERY = "3-5 business days"


def template_for(notification_type: str, status: str | None = None) -> str:
    if notification_type == TYPE_CONFIRMATION:
        return "order_confirmation"
    if notification_type == TYPE_STATUS_UPDATE:
        return STATUS_TEMPLATES.get((status or "").replace("-", "_"), "order_status_update")
    if notification_type == TYPE_SHIPPING:
        return "order_shipped"
    if notification_type == TYPE_DELIVERY:
        return "order_completed"
    raise ValidationException(f"Unknown notification type: {notification_type}", field="type")


def format_carrier_name(carrier: str) -> str:
    return CARRIER_NAMES.get(carrier.lower(), carrier[:1].upper() + carrier[1:])


def tracking_url(carrier: str, tracking_number: str) -> str:
    pattern = TRACKING_URLS.get(carrier.lower())
    return pattern.format(quote(tracking_number)) if pattern else ""


def _parse_hhmm(value: str) -> dt_time:
    hour, minute = value.split(":")
    return dt_time(int(hour), int(minute))


def is_quiet_hours(local_time: dt_time, start: str, end: str) -> bool:
    """חלון שעות שקטות; start > end = חלון שחוצה חצות (21:00-09:00)"""
    start_t, end_t = _parse_hhmm(start), _parse_hhmm(end)
    current = local_time.replace(second=0, microsecond=0, tzinfo=None)
    if start_t > end_t:
        return current >= start_t or current < end_t
    return start_t <= current < end_t


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderNotificationProcessor(QueueProcessor):
    name = "order_notification"
    hook_name = HOOK_NAME
    scope = IdempotencyScope.NOTIFICATION
    max_retries = 5

    def __init__(
        self,
        deps: ProcessorDependencies,
        provider: BaseWhatsAppProvider,
        circuit_breaker: CircuitBreaker | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        super().__init__(deps, circuit_breaker)
        self.provider = provider
        self._clock = clock

    @property
    def db(self):
        return self.deps.queue.db

    def idempotency_key(self, payload: dict[str, Any]) -> str:
        order_id = payload.get("order_id")
        notification_type = payload.get("type")
        if not order_id or not notification_type:
            raise ValidationException("order_id and type are required")
        template = template_for(notification_type, payload.get("status"))
        return generate_key(order_id, notification_type, template)

    async def preflight(self, payload: dict[str, Any]) -> str | None:
        order = await self._get_order(payload["order_id"])
        phone = order.customer_phone
        template = template_for(payload["type"], payload.get("status"))
        preference = await self._get_preference(phone)

        if preference is not None and preference.notifications_opt_out:
            await self._log(order.id, phone, payload["type"], template, "skipped_opt_out")
            return SKIPPED_OPTED_OUT

        if settings.QUIET_HOURS_ENABLED:
            local_now = self._clock().astimezone(self._timezone_for(preference))
            if is_quiet_hours(local_now.time(), settings.QUIET_HOURS_START, settings.QUIET_HOURS_END):
                await self._log(order.id, phone, payload["type"], template, "skipped_quiet_hours")
                return SKIPPED_QUIET_HOURS

        return None

    async def process(self, payload: dict[str, Any]) -> dict[str, Any]:
        notification_type = payload["type"]
        order = await self._get_order(payload["order_id"])
        phone = order.customer_phone
        template = template_for(notification_type, payload.get("status"))
        parameters = self._parameters_for(order, notification_type, payload)

        self.ensure_circuit_available()
        try:
            wa_message_id = await self.provider.send_template(phone, template, "en", parameters)
        except AppException as exc:
            await self._log(order.id, phone, notification_type, template, "failed", error=str(exc))
            raise

        await self._log(order.id, phone, notification_type, template, "sent", wa_message_id=wa_message_id)
        logger.info(
            "Order notification sent",
            extra_data={
                "order_id": order.id,
                "type": notification_type,
                "template": template,
                "phone": PhoneNumberValidator.mask(phone),
            },
        )
        await self._emit("notification.sent", {
            "order_id": order.id,
            "type": notification_type,
            "template": template,
            "wa_message_id": wa_message_id,
        })
        return {"wa_message_id": wa_message_id, "template": template}

    def _parameters_for(self, order: Order, notification_type: str, payload: dict[str, Any]) -> list[str]:
        order_number = str(order.id)
        if notification_type == TYPE_CONFIRMATION:
            item_count = sum(int(item.get("quantity", 0)) for item in order.items or [])
            return [
                order_number,
                f"{order.total:.2f}",
                str(item_count),
                payload.get("estimated_delivery") or DEFAULT_ESTIMATED_DELIVERY,
            ]
        if notification_type == TYPE_STATUS_UPDATE:
            status = (payload.get("status") or order.status.value).replace("-", "_")
            text, emoji, action_needed = STATUS_INFO.get(
                status, (status.replace("_", " ").capitalize(), "📋", "")
            )
            return [order_number, text, emoji, action_needed]
        if notification_type == TYPE_SHIPPING:
            carrier = payload.get("carrier") or order.carrier or ""
            tracking_number = payload.get("tracking_number") or order.tracking_number or ""
            return [
                order_number,
                format_carrier_name(carrier),
                tracking_number,
                tracking_url(carrier, tracking_number),
            ]
        return [order_number]

    async def _get_order(self, order_id: Any) -> Order:
        result = await self.db.execute(select(Order).where(Order.id == int(order_id)))
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def _get_preference(self, phone: str) -> CustomerPreference | None:
        result = await self.db.execute(
            select(CustomerPreference).where(CustomerPreference.customer_phone == phone)
        )
        return result.scalar_one_or_none()

    def _timezone_for(self, preference: CustomerPreference | None) -> ZoneInfo:
        name = (preference.timezone if preference else None) or settings.DEFAULT_CUSTOMER_TIMEZONE
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown customer timezone, using UTC", extra_data={"timezone": name})
            return ZoneInfo("UTC")

    async def _log(
        self,
        order_id: int,
        phone: str,
        notification_type: str,
        template: str,
        status: str,
        wa_message_id: str | None = None,
        error: str | None = None,
    ) -> None:
        self.db.add(NotificationLog(
            order_id=order_id,
            customer_phone=phone,
            notification_type=notification_type,
            template_name=template,
            status=status,
            wa_message_id=wa_message_id,
            error=error,
        ))
        await self.db.commit()
