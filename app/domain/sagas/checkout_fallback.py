"""
Checkout Fallback - checkout בטרנזקציה אחת עם נעילת שורות, בלי orchestrator.

נועל את שורת העגלה (SELECT ... FOR UPDATE) ואת שורות המוצרים לפי סדר id,
מוריד מלאי, יוצר הזמנה ומחייב. כל כשלון מבטל את כל הטרנזקציה; חיוב
שהצליח לפני כשלון מאוחר יותר מקבל החזר.
"""
from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.event_bus import Publisher
from app.core.exceptions import (
    AppException,
    OutOfStockError,
    SagaCompensationError,
    ValidationException,
)
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.cart import Cart, CartStatus
from app.db.models.order import Order, OrderStatus, PaymentStatus
from app.db.models.product import Product
from app.domain.sagas.checkout_saga import (
    COD,
    NEXT_STEP_CONFIRMED,
    CheckoutOutcome,
    confirmation_message,
    failure_outcome,
)
from app.domain.services.catalog_service import CartLine
from app.domain.services.payment_service import PaymentResult, PaymentService

logger = get_logger(__name__)


class CheckoutFallback:
    def __init__(
        self,
        db: AsyncSession,
        payments: PaymentService,
        event_bus: Publisher | None = None,
    ):
        self.db = db
        self.payments = payments
        self.event_bus = event_bus

    async def execute(self, phone: str, checkout_data: dict[str, Any]) -> CheckoutOutcome:
        """
        Raises:
            SagaCompensationError: ההחזר על חיוב שבוצע נכשל
        """
        checkout_id = f"checkout_{uuid.uuid4().hex}"
        stage = "validate_cart"
        charge: PaymentResult | None = None
        total = Decimal("0")
        try:
            cart = await self._lock_cart(phone)
            if cart is None or not cart.items:
                raise ValidationException("Cart is empty", field="cart")

            stage = "reserve_inventory"
            lines = await self._reserve_locked(cart)
            total = sum((line.subtotal for line in lines), Decimal("0"))

            stage = "create_order"
            method = checkout_data.get("payment_method") or COD
            order = Order(
                customer_phone=phone,
                status=OrderStatus.PENDING,
                total=total,
                items=[line.to_dict() for line in lines],
                payment_method=method,
                payment_status=PaymentStatus.PENDING,
                shipping_address=checkout_data.get("shipping_address"),
                shipping_method=checkout_data.get("shipping_method"),
                saga_id=checkout_id,
            )
            self.db.add(order)
            await self.db.flush()

            stage = "process_payment"
            if method == COD:
                order.payment_status = PaymentStatus.PENDING_COD
            else:
                charge = await self.payments.charge(
                    order.id, total, method, phone, idempotency_key=f"{checkout_id}:charge"
                )
                order.payment_status = PaymentStatus.PAID
                order.payment_id = charge.payment_id
            order.status = OrderStatus.PROCESSING

            stage = "finalize"
            cart.status = CartStatus.CONVERTED
            await self.db.commit()
        except Exception as exc:
            await self.db.rollback()
            if not isinstance(exc, AppException):
                logger.error(
                    "Checkout fallback failed unexpectedly",
                    extra_data={"checkout_id": checkout_id, "stage": stage},
                    exc_info=True,
                )
            compensated = await self._refund(checkout_id, stage, charge, total)
            logger.warning(
                "Checkout fallback rolled back",
                extra_data={
                    "checkout_id": checkout_id,
                    "phone": PhoneNumberValidator.mask(phone),
                    "stage": stage,
                    "error": str(exc),
                },
            )
            outcome = failure_outcome(stage, str(exc), saga_id=checkout_id, compensated=compensated)
            await self._emit("checkout.failed", {**outcome.to_dict(), "phone": phone})
            return outcome

        payment_status = order.payment_status.value
        logger.info(
            "Checkout completed (row-lock fallback)",
            extra_data={
                "checkout_id": checkout_id,
                "order_id": order.id,
                "phone": PhoneNumberValidator.mask(phone),
            },
        )
        await self._emit("checkout.completed", {
            "saga_id": checkout_id,
            "order_id": order.id,
            "phone": phone,
            "total": str(total),
            "payment_status": payment_status,
        })
        return CheckoutOutcome(
            success=True,
            message=confirmation_message(order.id, str(total), payment_status),
            next_step=NEXT_STEP_CONFIRMED,
            order_id=order.id,
            payment_status=payment_status,
            total=str(total),
            saga_id=checkout_id,
        )

    async def _lock_cart(self, phone: str) -> Cart | None:
        result = await self.db.execute(
            select(Cart)
            .where(Cart.customer_phone == phone, Cart.status == CartStatus.ACTIVE)
            .order_by(Cart.updated_at.desc(), Cart.id.desc())
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _reserve_locked(self, cart: Cart) -> list[CartLine]:
        product_ids = sorted({item.product_id for item in cart.items})
        # נעילה לפי סדר id קבוע - שני checkouts לא ינעלו בסדר הפוך
        result = await self.db.execute(
            select(Product)
            .where(Product.id.in_(product_ids))
            .order_by(Product.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        products = {product.id: product for product in result.scalars().all()}

        lines: list[CartLine] = []
        for item in cart.items:
            product = products.get(item.product_id)
            if product is None or not product.is_active:
                raise ValidationException(
                    f"Product {item.product_id} is no longer available",
                    field="product_id",
                    details={"product_id": item.product_id},
                )
            if item.quantity <= 0:
                raise ValidationException(
                    f"Invalid quantity for product {item.product_id}", field="quantity"
                )
            if product.stock < item.quantity:
                raise OutOfStockError(product.id, item.quantity, product.stock)
            product.stock -= item.quantity
            lines.append(CartLine(
                product_id=product.id,
                quantity=item.quantity,
                unit_price=Decimal(product.price),
                name=product.name,
            ))
        return lines

    async def _refund(
        self,
        checkout_id: str,
        stage: str,
        charge: PaymentResult | None,
        amount: Decimal,
    ) -> bool:
        if charge is None:
            return True
        try:
            await self.payments.refund(charge.payment_id, amount)
        except Exception as exc:
            logger.critical(
                "Refund after failed checkout failed, manual intervention required",
                extra_data={
                    "checkout_id": checkout_id,
                    "payment_id": charge.payment_id,
                    "error": str(exc),
                },
            )
            await self._emit("saga.compensation_failed", {
                "saga_id": checkout_id,
                "saga_type": "checkout_fallback",
                "failed_step": stage,
                "compensation_errors": {"process_payment": str(exc)},
            })
            raise SagaCompensationError(checkout_id, stage, {"process_payment": str(exc)}) from exc
        logger.info(
            "Refunded charge after failed checkout",
            extra_data={"checkout_id": checkout_id, "payment_id": charge.payment_id},
        )
        return True

    async def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event, data)
