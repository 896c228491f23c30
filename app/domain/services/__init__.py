"""
Domain Services
"""
from app.domain.services.idempotency_service import ClaimResult, IdempotencyService, generate_key
from app.domain.services.priority_queue import JobPriority, PriorityQueue
from app.domain.services.dead_letter_queue import DeadLetterQueue
from app.domain.services.circuit_state_store import CircuitStateStore
from app.domain.services.job_dispatcher import JobDispatcher
from app.domain.services.catalog_service import CartLine, CatalogService, SqlCatalogService
from app.domain.services.cart_service import CartService, SqlCartService
from app.domain.services.order_service import OrderService, SqlOrderService
from app.domain.services.payment_service import HttpPaymentService, PaymentService

__all__ = [
    "ClaimResult",
    "IdempotencyService",
    "generate_key",
    "JobPriority",
    "PriorityQueue",
    "DeadLetterQueue",
    "CircuitStateStore",
    "JobDispatcher",
    "CartLine",
    "CatalogService",
    "SqlCatalogService",
    "CartService",
    "SqlCartService",
    "OrderService",
    "SqlOrderService",
    "HttpPaymentService",
    "PaymentService",
]
