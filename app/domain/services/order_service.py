"""
Order Service - יצירה, ביטול ועדכון סטטוס תשלום של הזמנות.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import OrderNotFoundError
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.order import Order, OrderStatus, PaymentStatus
from app.domain.services.catalog_service import CartLine

logger = get_logger(__name__)


class OrderService(ABC):
    """ממשק הזמנות"""

    @abstractmethod
    async def create_order(
        self,
        customer_phone: str,
        items: list[CartLine],
        *,
        payment_method: str,
        shipping_address: Optional[dict[str, Any]] = None,
        shipping_method: Optional[str] = None,
        saga_id: Optional[str] = None,
    ) -> Order:
        """יצירת הזמנה במצב pending"""

    @abstractmethod
    async def cancel_order(self, order_id: int, reason: str) -> None:
        """ביטול הזמנה (compensation)"""

    @abstractmethod
    async def mark_paid(self, order_id: int, payment_id: str) -> None:
        """סימון תשלום שהצליח"""

    @abstractmethod
    async def mark_pending_cod(self, order_id: int) -> None:
        """תשלום במזומן במסירה - אין חיוב כעת"""

    @abstractmethod
    async def update_payment_status(
        self,
        order_id: int,
        status: PaymentStatus,
        payment_id: Optional[str] = None,
    ) -> Order:
        """עדכון סטטוס תשלום מ-webhook של שער התשלום"""

    @abstractmethod
    async def get_order(self, order_id: int) -> Order | None:
        ...

    @abstractmethod
    async def find_by_payment_id(self, payment_id: str) -> Order | None:
        ...


# מעבר סטטוס הזמנה בעקבות סטטוס תשלום
_ORDER_STATUS_FOR_PAYMENT = {
    PaymentStatus.PAID: OrderStatus.PROCESSING,
    PaymentStatus.FAILED: OrderStatus.FAILED,
    PaymentStatus.REFUNDED: OrderStatus.REFUNDED,
}


class SqlOrderService(OrderService):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_or_raise(self, order_id: int) -> Order:
        order = await self.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def create_order(
        self,
        customer_phone: str,
        items: list[CartLine],
        *,
        payment_method: str,
        shipping_address: Optional[dict[str, Any]] = None,
        shipping_method: Optional[str] = None,
        saga_id: Optional[str] = None,
    ) -> Order:
        total = sum((line.subtotal for line in items), Decimal("0"))
        order = Order(
            customer_phone=customer_phone,
            status=OrderStatus.PENDING,
            total=total,
            items=[line.to_dict() for line in items],
            payment_method=payment_method,
            payment_status=PaymentStatus.PENDING,
            shipping_address=shipping_address,
            shipping_method=shipping_method,
            saga_id=saga_id,
        )
        self.db.add(order)
        await self.db.commit()
        await self.db.refresh(order)
        logger.info(
            "Order created",
            extra_data={
                "order_id": order.id,
                "phone": PhoneNumberValidator.mask(customer_phone),
                "total": str(total),
                "saga_id": saga_id,
            },
        )
        return order

    async def cancel_order(self, order_id: int, reason: str) -> None:
        order = await self._get_or_raise(order_id)
        order.status = OrderStatus.CANCELLED
        order.cancel_reason = reason
        await self.db.commit()
        logger.info("Order cancelled", extra_data={"order_id": order_id, "reason": reason})

    async def mark_paid(self, order_id: int, payment_id: str) -> None:
        order = await self._get_or_raise(order_id)
        order.payment_status = PaymentStatus.PAID
        order.payment_id = payment_id
        order.status = OrderStatus.PROCESSING
        await self.db.commit()

    async def mark_pending_cod(self, order_id: int) -> None:
        order = await self._get_or_raise(order_id)
        order.payment_status = PaymentStatus.PENDING_COD
        order.status = OrderStatus.PROCESSING
        await self.db.commit()

    async def update_payment_status(
        self,
        order_id: int,
        status: PaymentStatus,
        payment_id: Optional[str] = None,
    ) -> Order:
        order = await self._get_or_raise(order_id)
        order.payment_status = status
        if payment_id:
            order.payment_id = payment_id
        new_status = _ORDER_STATUS_FOR_PAYMENT.get(status)
        # הזמנה שכבר בוטלה לא חוזרת לחיים בגלל webhook מאוחר
        if new_status is not None and order.status != OrderStatus.CANCELLED:
            order.status = new_status
        await self.db.commit()
        return order

    async def get_order(self, order_id: int) -> Order | None:
        result = await self.db.execute(select(Order).where(Order.id == order_id))
        return result.scalar_one_or_none()

    async def find_by_payment_id(self, payment_id: str) -> Order | None:
        result = await self.db.execute(select(Order).where(Order.payment_id == payment_id))
        return result.scalars().first()
