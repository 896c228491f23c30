"""
Cart Service - קריאת העגלה הפעילה של לקוח וסימונה כהומרה.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.cart import Cart, CartStatus
from app.domain.services.catalog_service import CartLine


class CartService(ABC):
    @abstractmethod
    async def get_active_cart(self, customer_phone: str) -> tuple[int, list[CartLine]] | None:
        """(cart_id, שורות) של העגלה הפעילה, או None אם אין"""

    @abstractmethod
    async def mark_converted(self, cart_id: int) -> None:
        """סימון העגלה כ-converted אחרי checkout מוצלח"""


class SqlCartService(CartService):
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_active_cart(self, customer_phone: str) -> tuple[int, list[CartLine]] | None:
        result = await self.db.execute(
            select(Cart)
            .where(Cart.customer_phone == customer_phone, Cart.status == CartStatus.ACTIVE)
            .order_by(Cart.updated_at.desc(), Cart.id.desc())
            .limit(1)
        )
        cart = result.scalar_one_or_none()
        if cart is None:
            return None
        lines = [
            CartLine(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=Decimal(item.unit_price),
            )
            for item in cart.items
        ]
        return cart.id, lines

    async def mark_converted(self, cart_id: int) -> None:
        result = await self.db.execute(select(Cart).where(Cart.id == cart_id))
        cart = result.scalar_one_or_none()
        if cart is not None:
            cart.status = CartStatus.CONVERTED
            await self.db.commit()
