"""
Queue processors - jobs שנשלפים מהתור ומעובדים ע"י JobRunner
"""
from app.domain.processors.base import ProcessingOutcome, ProcessorDependencies, QueueProcessor
from app.domain.processors.delivery_status import DeliveryStatusProcessor
from app.domain.processors.inbound_message import InboundMessageProcessor
from app.domain.processors.order_notification import OrderNotificationProcessor
from app.domain.processors.registry import ProcessorRegistry
from app.domain.processors.webhook_error import WebhookErrorProcessor

__all__ = [
    "ProcessingOutcome",
    "ProcessorDependencies",
    "QueueProcessor",
    "DeliveryStatusProcessor",
    "InboundMessageProcessor",
    "OrderNotificationProcessor",
    "ProcessorRegistry",
    "WebhookErrorProcessor",
]
