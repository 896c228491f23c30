"""
Payment Event Handler - החלת אירוע תשלום מאומת על ההזמנה.
"""
from __future__ import annotations

from typing import Any

from app.core.event_bus import Publisher
from app.core.logging import get_logger
from app.domain.services.order_service import OrderService
from app.domain.services.payment_gateways import PaymentEvent

logger = get_logger(__name__)


class PaymentEventHandler:
    def __init__(self, orders: OrderService, event_bus: Publisher | None = None):
        self.orders = orders
        self.event_bus = event_bus

    async def handle(self, event: PaymentEvent) -> dict[str, Any]:
        """
        עדכון סטטוס התשלום של ההזמנה.

        אירוע שלא ממופה לסטטוס, או שההזמנה שלו לא נמצאה, מוחזר כ-ignored -
        שער התשלום לא ישלח אותו שוב ואין טעם ב-retry.
        """
        log_data = {"gateway": event.gateway, "event_id": event.event_id, "event_type": event.event_type}
        if event.status is None:
            logger.info("Payment event type not handled", extra_data=log_data)
            return {"status": "ignored", "reason": "unhandled_event_type"}

        order = None
        if event.order_id is not None:
            order = await self.orders.get_order(event.order_id)
        if order is None and event.payment_id:
            order = await self.orders.find_by_payment_id(event.payment_id)
        if order is None:
            logger.warning("Payment event for unknown order", extra_data={**log_data, "order_id": event.order_id})
            return {"status": "ignored", "reason": "order_not_found"}

        if order.payment_status == event.status:
            return {"status": "ignored", "reason": "unchanged", "order_id": order.id}

        previous = order.payment_status.value
        order = await self.orders.update_payment_status(order.id, event.status, event.payment_id)
        logger.info(
            "Payment status updated from webhook",
            extra_data={**log_data, "order_id": order.id, "previous": previous, "status": event.status.value},
        )
        if self.event_bus is not None:
            await self.event_bus.emit("payment.status_changed", {
                "order_id": order.id,
                "gateway": event.gateway,
                "payment_id": event.payment_id,
                "previous_status": previous,
                "status": event.status.value,
                "order_status": order.status.value,
            })
        return {"status": "applied", "order_id": order.id, "payment_status": event.status.value}
