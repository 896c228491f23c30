"""
Cart Models - עגלת קניות לפי טלפון לקוח
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Numeric, ForeignKey
from sqlalchemy.orm import relationship

from app.db.database import Base, utcnow


class CartStatus(str, enum.Enum):
    ACTIVE = "active"
    CONVERTED = "converted"   # הפכה להזמנה
    ABANDONED = "abandoned"


class Cart(Base):
    __tablename__ = "carts"

    id = Column(Integer, primary_key=True, index=True)
    customer_phone = Column(String(32), nullable=False, index=True)
    status = Column(SQLEnum(CartStatus), nullable=False, default=CartStatus.ACTIVE)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    cart_id = Column(Integer, ForeignKey("carts.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    # מחיר בזמן ההוספה - checkout משווה מול המחיר הנוכחי
    unit_price = Column(Numeric(10, 2), nullable=False)

    cart = relationship("Cart", back_populates="items")
