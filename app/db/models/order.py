"""
Order Model - הזמנות שנוצרו ב-checkout
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, JSON, Text

from app.db.database import Base, utcnow


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    ON_HOLD = "on_hold"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PENDING_COD = "pending_cod"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    customer_phone = Column(String(32), nullable=False, index=True)
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    total = Column(Numeric(10, 2), nullable=False, default=0)
    # [{"product_id", "quantity", "unit_price"}]
    items = Column(JSON, nullable=False, default=list)

    payment_method = Column(String(32), nullable=False)
    payment_status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    payment_id = Column(String(100), nullable=True, index=True)
    shipping_address = Column(JSON, nullable=True)
    shipping_method = Column(String(50), nullable=True)
    tracking_number = Column(String(100), nullable=True)
    carrier = Column(String(50), nullable=True)

    saga_id = Column(String(100), nullable=True, index=True)
    cancel_reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
