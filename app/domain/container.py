"""
Composition root - בניית כל השירותים עם תלויות מפורשות.

build_container(db) נקרא פעם אחת לכל בקשה / task עם ה-session שלה.
ה-breakers וספק ה-WhatsApp משותפים לתהליך; כל השאר קשור ל-session.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.circuit_breaker import (
    CircuitBreaker,
    get_payment_circuit_breaker,
    get_whatsapp_circuit_breaker,
)
from app.core.config import settings
from app.core.event_bus import EventBus
from app.core.key_value_store import KeyValueStore, get_key_value_store
from app.core.logging import get_logger
from app.domain.processors import (
    DeliveryStatusProcessor,
    InboundMessageProcessor,
    OrderNotificationProcessor,
    ProcessorDependencies,
    ProcessorRegistry,
    WebhookErrorProcessor,
)
from app.domain.processors.order_notification import (
    HOOK_NAME as ORDER_NOTIFICATION_HOOK,
    TYPE_CONFIRMATION,
    TYPE_STATUS_UPDATE,
)
from app.domain.sagas import (
    CheckoutFallback,
    CheckoutOutcome,
    CheckoutSaga,
    KeyValueSagaStateStore,
    SagaOrchestrator,
    SqlSagaStateStore,
)
from app.domain.services.cart_service import CartService, SqlCartService
from app.domain.services.catalog_service import CatalogService, SqlCatalogService
from app.domain.services.circuit_state_store import CircuitStateStore
from app.domain.services.dead_letter_queue import DeadLetterQueue
from app.domain.services.idempotency_service import IdempotencyService
from app.domain.services.intent_classifier import IntentClassifier
from app.domain.services.job_dispatcher import JobDispatcher
from app.domain.services.job_runner import JobRunner
from app.domain.services.order_service import OrderService, SqlOrderService
from app.domain.services.payment_event_handler import PaymentEventHandler
from app.domain.services.payment_service import HttpPaymentService, PaymentService
from app.domain.services.priority_queue import JobPriority, PriorityQueue
from app.domain.services.whatsapp import BaseWhatsAppProvider, get_whatsapp_provider

logger = get_logger(__name__)

NOTIFICATION_MAX_ATTEMPTS = 5


@dataclass
class ServiceContainer:
    db: AsyncSession
    kv_store: KeyValueStore
    event_bus: EventBus
    idempotency: IdempotencyService
    queue: PriorityQueue
    dead_letters: DeadLetterQueue
    circuit_store: CircuitStateStore
    dispatcher: JobDispatcher
    registry: ProcessorRegistry
    runner: JobRunner
    catalog: CatalogService
    carts: CartService
    orders: OrderService
    payments: PaymentService
    payment_events: PaymentEventHandler
    orchestrator: SagaOrchestrator
    checkout_saga: CheckoutSaga
    checkout_fallback: CheckoutFallback
    whatsapp_breaker: CircuitBreaker
    payment_breaker: CircuitBreaker
    provider: BaseWhatsAppProvider

    @property
    def breakers(self) -> dict[str, CircuitBreaker]:
        return {
            self.whatsapp_breaker.service_name: self.whatsapp_breaker,
            self.payment_breaker.service_name: self.payment_breaker,
        }

    async def checkout(
        self,
        phone: str,
        checkout_data: dict[str, Any],
        saga_id: str | None = None,
    ) -> CheckoutOutcome:
        if settings.CHECKOUT_USE_SAGA:
            return await self.checkout_saga.execute(phone, checkout_data, saga_id=saga_id)
        return await self.checkout_fallback.execute(phone, checkout_data)


def register_subscribers(event_bus: EventBus, dispatcher: JobDispatcher) -> None:
    """התראות ללקוח על אירועי הזמנה - נשלחות דרך התור, לא inline"""

    async def on_checkout_completed(event_name: str, data: dict[str, Any]) -> None:
        await dispatcher.dispatch(
            ORDER_NOTIFICATION_HOOK,
            {"order_id": data["order_id"], "type": TYPE_CONFIRMATION},
            priority=JobPriority.URGENT,
            max_attempts=NOTIFICATION_MAX_ATTEMPTS,
        )

    async def on_payment_status_changed(event_name: str, data: dict[str, Any]) -> None:
        await dispatcher.dispatch(
            ORDER_NOTIFICATION_HOOK,
            {
                "order_id": data["order_id"],
                "type": TYPE_STATUS_UPDATE,
                "status": data["order_status"],
            },
            max_attempts=NOTIFICATION_MAX_ATTEMPTS,
        )

    event_bus.on("checkout.completed", on_checkout_completed)
    event_bus.on("payment.status_changed", on_payment_status_changed)


def build_registry(
    deps: ProcessorDependencies,
    kv_store: KeyValueStore,
    provider: BaseWhatsAppProvider,
    whatsapp_breaker: CircuitBreaker,
    classifier: IntentClassifier | None = None,
) -> ProcessorRegistry:
    registry = ProcessorRegistry()
    registry.register(InboundMessageProcessor(deps, classifier=classifier))
    registry.register(DeliveryStatusProcessor(deps))
    registry.register(WebhookErrorProcessor(deps, kv_store, whatsapp_breaker, provider=provider))
    registry.register(OrderNotificationProcessor(deps, provider, circuit_breaker=whatsapp_breaker))
    return registry


def build_container(
    db: AsyncSession,
    *,
    kv_store: Optional[KeyValueStore] = None,
    event_bus: Optional[EventBus] = None,
    provider: Optional[BaseWhatsAppProvider] = None,
    payments: Optional[PaymentService] = None,
    classifier: Optional[IntentClassifier] = None,
    task_sender: Optional[Callable[[str, list[Any], int], Any]] = None,
) -> ServiceContainer:
    kv_store = kv_store or get_key_value_store()
    event_bus = event_bus or EventBus()
    whatsapp_breaker = get_whatsapp_circuit_breaker()
    payment_breaker = get_payment_circuit_breaker()
    provider = provider or get_whatsapp_provider()

    idempotency = IdempotencyService(db, kv_store, event_bus)
    queue = PriorityQueue(db, kv_store, idempotency, event_bus, task_sender=task_sender)
    dead_letters = DeadLetterQueue(db, kv_store, queue, event_bus)
    circuit_store = CircuitStateStore(kv_store)
    dispatcher = JobDispatcher(queue)

    deps = ProcessorDependencies(
        idempotency=idempotency,
        queue=queue,
        dead_letters=dead_letters,
        circuit_store=circuit_store,
        event_bus=event_bus,
    )
    registry = build_registry(deps, kv_store, provider, whatsapp_breaker, classifier)

    catalog = SqlCatalogService(db)
    carts = SqlCartService(db)
    orders = SqlOrderService(db)
    payments = payments or HttpPaymentService(payment_breaker)

    orchestrator = SagaOrchestrator(
        SqlSagaStateStore(db, fallback=KeyValueSagaStateStore(kv_store)),
        event_bus,
    )

    register_subscribers(event_bus, dispatcher)

    return ServiceContainer(
        db=db,
        kv_store=kv_store,
        event_bus=event_bus,
        idempotency=idempotency,
        queue=queue,
        dead_letters=dead_letters,
        circuit_store=circuit_store,
        dispatcher=dispatcher,
        registry=registry,
        runner=JobRunner(queue, dead_letters, registry),
        catalog=catalog,
        carts=carts,
        orders=orders,
        payments=payments,
        payment_events=PaymentEventHandler(orders, event_bus),
        orchestrator=orchestrator,
        checkout_saga=CheckoutSaga(orchestrator, carts, catalog, orders, payments, event_bus),
        checkout_fallback=CheckoutFallback(db, payments, event_bus),
        whatsapp_breaker=whatsapp_breaker,
        payment_breaker=payment_breaker,
        provider=provider,
    )
