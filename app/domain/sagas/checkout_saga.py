"""
Checkout Saga - validate cart -> reserve inventory -> create order -> process payment.

כל צעד מחזיר dict שנשמר ביומן ה-saga, ולכן חייב להיות JSON-serializable.
כשלון ב-validate_cart / reserve_inventory מחזיר את הלקוח לסקירת העגלה
ולא נשלח ל-retry - בדרך כלל זה מלאי שנגמר ולא תקלה זמנית.
"""
from __future__ import annotations

import hashlib
import random
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from app.core.event_bus import Publisher
from app.core.exceptions import ValidationException
from app.core.logging import get_logger
from app.core.validation import PhoneNumberValidator
from app.db.models.order import PaymentStatus
from app.domain.sagas.orchestrator import SagaOrchestrator, SagaResult, SagaStep
from app.domain.services.cart_service import CartService
from app.domain.services.catalog_service import CartLine, CatalogService
from app.domain.services.order_service import OrderService
from app.domain.services.payment_service import PaymentService

logger = get_logger(__name__)

SAGA_TYPE = "checkout"
COD = "cod"

STOCK_FAILURE_STEPS = ("validate_cart", "reserve_inventory")

MESSAGE_REVIEW_CART = "Some items in your cart are no longer available. Please review your cart."
MESSAGE_PAYMENT_FAILED = "Payment could not be completed. Please try again or choose another payment method."
MESSAGE_GENERIC_FAILURE = "We couldn't complete your order right now. Please try again in a few minutes."

NEXT_STEP_CART_REVIEW = "cart_review"
NEXT_STEP_PAYMENT_METHOD = "payment_method"
NEXT_STEP_RETRY = "checkout"
NEXT_STEP_CONFIRMED = "order_confirmed"


@dataclass
class CheckoutOutcome:
    """תוצאת checkout כפי שהיא מוצגת ללקוח - זהה ל-saga ול-fallback"""

    success: bool
    message: str
    next_step: str
    order_id: Optional[int] = None
    payment_status: Optional[str] = None
    total: Optional[str] = None
    saga_id: Optional[str] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None
    compensated: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "next_step": self.next_step,
            "order_id": self.order_id,
            "payment_status": self.payment_status,
            "total": self.total,
            "saga_id": self.saga_id,
            "failed_step": self.failed_step,
            "error": self.error,
            "compensated": self.compensated,
        }


def confirmation_message(order_id: int, total: str, payment_status: str) -> str:
    message = f"Order #{order_id} confirmed! Total: {total}."
    if payment_status == PaymentStatus.PENDING_COD.value:
        message += " Please have the payment ready on delivery."
    return message


def failure_outcome(failed_step: str | None, error: str | None, **kwargs: Any) -> CheckoutOutcome:
    """מיפוי הצעד שנכשל להודעה וליעד הבא בשיחה"""
    if failed_step in STOCK_FAILURE_STEPS:
        message, next_step = MESSAGE_REVIEW_CART, NEXT_STEP_CART_REVIEW
    elif failed_step == "process_payment":
        message, next_step = MESSAGE_PAYMENT_FAILED, NEXT_STEP_PAYMENT_METHOD
    else:
        message, next_step = MESSAGE_GENERIC_FAILURE, NEXT_STEP_RETRY
    return CheckoutOutcome(
        success=False,
        message=message,
        next_step=next_step,
        failed_step=failed_step,
        error=error,
        **kwargs,
    )


def generate_saga_id(phone: str) -> str:
    seed = f"{phone}_{time.time()}_{random.randint(0, 2**31)}"
    return "checkout_" + hashlib.md5(seed.encode("utf-8")).hexdigest()


class CheckoutSaga:
    def __init__(
        self,
        orchestrator: SagaOrchestrator,
        carts: CartService,
        catalog: CatalogService,
        orders: OrderService,
        payments: PaymentService,
        event_bus: Publisher | None = None,
    ):
        self.orchestrator = orchestrator
        self.carts = carts
        self.catalog = catalog
        self.orders = orders
        self.payments = payments
        self.event_bus = event_bus

    async def execute(
        self,
        phone: str,
        checkout_data: dict[str, Any],
        saga_id: str | None = None,
    ) -> CheckoutOutcome:
        """
        הרצת checkout מלא.

        Args:
            saga_id: מזהה קבוע (למשל Idempotency-Key של הבקשה). הרצה חוזרת
                עם אותו מזהה מחזירה את התוצאה השמורה.

        Raises:
            SagaCompensationError: compensation נכשל - נדרשת התערבות ידנית
            SagaConcurrentExecutionError: checkout עם אותו מזהה כבר רץ
        """
        saga_id = saga_id or generate_saga_id(phone)
        context = {
            "phone": phone,
            "checkout_data": checkout_data,
            "order_id": None,
            "payment_id": None,
            "inventory_held": [],
            "cart_items": [],
        }
        result = await self.orchestrator.execute(saga_id, SAGA_TYPE, context, self.build_steps())
        outcome = self._to_outcome(result)

        log_data = {
            "saga_id": saga_id,
            "phone": PhoneNumberValidator.mask(phone),
            "order_id": outcome.order_id,
        }
        if outcome.success:
            logger.info("Checkout completed", extra_data=log_data)
        else:
            logger.warning(
                "Checkout failed",
                extra_data={**log_data, "failed_step": result.failed_step, "error": result.error},
            )
            await self._emit("checkout.failed", {**outcome.to_dict(), "phone": phone})
        return outcome

    def build_steps(self) -> list[SagaStep]:
        return [
            # רק הקריאה של העגלה בטוחה ל-retry
            SagaStep("validate_cart", self._validate_cart, max_retries=2),
            SagaStep("reserve_inventory", self._reserve_inventory, compensation=self._release_inventory),
            SagaStep("create_order", self._create_order, compensation=self._cancel_order),
            # חיוב לא חוזר על עצמו אוטומטית
            SagaStep(
                "process_payment",
                self._process_payment,
                compensation=self._refund_payment,
                compensate_on_failure=True,
            ),
            SagaStep("finalize", self._finalize, critical=False),
        ]

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _validate_cart(self, context: dict[str, Any]) -> dict[str, Any]:
        cart = await self.carts.get_active_cart(context["phone"])
        if cart is None:
            raise ValidationException("Cart is empty", field="cart")
        cart_id, lines = cart
        validated = await self.catalog.validate_items(lines)
        total = sum((line.subtotal for line in validated), Decimal("0"))
        context["cart_items"] = [line.to_dict() for line in validated]
        return {
            "cart_id": cart_id,
            "items": context["cart_items"],
            "total": str(total),
        }

    async def _reserve_inventory(self, context: dict[str, Any]) -> dict[str, Any]:
        lines = [CartLine.from_dict(item) for item in context["cart_items"]]
        await self.catalog.reserve(lines)
        held = [{"product_id": line.product_id, "quantity": line.quantity} for line in lines]
        context["inventory_held"] = held
        return {"inventory_held": held}

    async def _release_inventory(self, context: dict[str, Any]) -> None:
        held = (context.get("step_result") or {}).get("inventory_held") or []
        await self.catalog.release([CartLine.from_dict(item) for item in held])
        logger.info(
            "Released inventory",
            extra_data={"saga_id": context.get("saga_id"), "lines": len(held)},
        )

    async def _create_order(self, context: dict[str, Any]) -> dict[str, Any]:
        checkout_data = context["checkout_data"]
        order = await self.orders.create_order(
            context["phone"],
            [CartLine.from_dict(item) for item in context["cart_items"]],
            payment_method=checkout_data.get("payment_method") or COD,
            shipping_address=checkout_data.get("shipping_address"),
            shipping_method=checkout_data.get("shipping_method"),
            saga_id=context["saga_id"],
        )
        context["order_id"] = order.id
        return {"order_id": order.id, "total": str(order.total)}

    async def _cancel_order(self, context: dict[str, Any]) -> None:
        order_id = (context.get("step_result") or {}).get("order_id")
        if order_id:
            await self.orders.cancel_order(order_id, "Checkout saga compensation")

    async def _process_payment(self, context: dict[str, Any]) -> dict[str, Any]:
        order_result = context["step_results"]["create_order"]
        order_id = order_result["order_id"]
        method = context["checkout_data"].get("payment_method") or COD

        if method == COD:
            await self.orders.mark_pending_cod(order_id)
            return {"payment_status": PaymentStatus.PENDING_COD.value, "payment_id": None}

        payment = await self.payments.charge(
            order_id,
            Decimal(order_result["total"]),
            method,
            context["phone"],
            idempotency_key=f"{context['saga_id']}:charge",
        )
        # נרשם לפני mark_paid - אם הצעד נכשל מכאן והלאה, ה-refund מוצא את החיוב
        context["payment_id"] = payment.payment_id
        context["payment_amount"] = order_result["total"]
        await self.orders.mark_paid(order_id, payment.payment_id)
        return {
            "payment_status": PaymentStatus.PAID.value,
            "payment_id": payment.payment_id,
            "amount": order_result["total"],
        }

    async def _refund_payment(self, context: dict[str, Any]) -> None:
        """
        refund לחיוב שנקלט. רץ גם כשהצעד עצמו נכשל אחרי charge (step_result ריק),
        ואז פרטי החיוב נלקחים מה-context.
        """
        result = context.get("step_result") or {}
        if result.get("payment_status") == PaymentStatus.PENDING_COD.value:
            return
        payment_id = result.get("payment_id") or context.get("payment_id")
        if not payment_id:
            return
        amount = result.get("amount") or context["payment_amount"]
        await self.payments.refund(payment_id, Decimal(amount))
        logger.info(
            "Refunded payment",
            extra_data={
                "saga_id": context.get("saga_id"),
                "payment_id": payment_id,
                "partial_step": not result,
            },
        )

    async def _finalize(self, context: dict[str, Any]) -> dict[str, Any]:
        await self.carts.mark_converted(context["step_results"]["validate_cart"]["cart_id"])
        payment = context["step_results"]["process_payment"]
        await self._emit("checkout.completed", {
            "saga_id": context["saga_id"],
            "order_id": context["order_id"],
            "phone": context["phone"],
            "total": context["step_results"]["create_order"]["total"],
            "payment_status": payment["payment_status"],
        })
        return {"cart_converted": True}

    # ------------------------------------------------------------------

    def _to_outcome(self, result: SagaResult) -> CheckoutOutcome:
        order = result.get_step_result("create_order") or {}
        if not result.success:
            return failure_outcome(
                result.failed_step,
                result.error,
                saga_id=result.saga_id,
                order_id=order.get("order_id"),
                compensated=result.compensated,
            )

        payment = result.get_step_result("process_payment") or {}
        payment_status = payment.get("payment_status")
        return CheckoutOutcome(
            success=True,
            message=confirmation_message(order["order_id"], order["total"], payment_status),
            next_step=NEXT_STEP_CONFIRMED,
            order_id=order["order_id"],
            payment_status=payment_status,
            total=order["total"],
            saga_id=result.saga_id,
        )

    async def get_order_status(self, saga_id: str) -> dict[str, Any] | None:
        state = await self.orchestrator.get_saga_state(saga_id)
        if state is None:
            return None
        order_id = (state["context"].get("step_results") or {}).get("create_order", {}).get("order_id")
        status: dict[str, Any] = {"saga_id": saga_id, "saga_status": state["status"], "order_id": order_id}
        if order_id:
            order = await self.orders.get_order(order_id)
            if order is not None:
                status["order_status"] = order.status.value
                status["payment_status"] = order.payment_status.value
                status["order_total"] = str(order.total)
        return status

    async def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event, data)
