"""
Database Models
"""
from app.db.models.idempotency_claim import IdempotencyClaim
from app.db.models.job import Job
from app.db.models.dead_letter_entry import DeadLetterEntry
from app.db.models.saga_execution import SagaExecution
from app.db.models.product import Product
from app.db.models.cart import Cart, CartItem
from app.db.models.order import Order
from app.db.models.conversation import Conversation, Message
from app.db.models.customer_preference import CustomerPreference
from app.db.models.notification_log import NotificationLog

__all__ = [
    "IdempotencyClaim",
    "Job",
    "DeadLetterEntry",
    "SagaExecution",
    "Product",
    "Cart",
    "CartItem",
    "Order",
    "Conversation",
    "Message",
    "CustomerPreference",
    "NotificationLog",
]
