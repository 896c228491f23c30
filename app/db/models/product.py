"""
Product Model - מלאי ומחיר לצורך checkout
"""
from sqlalchemy import Column, Integer, String, Boolean, Numeric, DateTime, CheckConstraint

from app.db.database import Base, utcnow


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(64), unique=True, nullable=True)
    name = Column(String(200), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    # stock מופחת רק ב-UPDATE מותנה (stock >= qty) - לעולם לא שלילי
    stock = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
    )
