"""
Catalog Service - אימות פריטים ושמירת מלאי ל-checkout.

reserve מוריד מלאי ב-UPDATE מותנה (stock >= qty) לכל שורה, כך ששני
checkouts מקבילים לא יכולים למכור את אותה יחידה אחרונה.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import OutOfStockError, ValidationException
from app.core.logging import get_logger
from app.db.models.product import Product

logger = get_logger(__name__)


@dataclass
class CartLine:
    product_id: int
    quantity: int
    unit_price: Decimal = field(default_factory=lambda: Decimal("0"))
    name: str = ""

    @property
    def subtotal(self) -> Decimal:
        return Decimal(self.unit_price) * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CartLine":
        return cls(
            product_id=int(data["product_id"]),
            quantity=int(data["quantity"]),
            unit_price=Decimal(str(data.get("unit_price", "0"))),
            name=data.get("name", ""),
        )


class CatalogService(ABC):
    """ממשק קטלוג - אימות, שמירה ושחרור מלאי"""

    @abstractmethod
    async def validate_items(self, items: list[CartLine]) -> list[CartLine]:
        """
        אימות שכל הפריטים קיימים, פעילים ובמלאי.

        Returns:
            השורות עם מחיר ושם עדכניים.

        Raises:
            ValidationException: עגלה ריקה / מוצר לא זמין
            OutOfStockError: אין מספיק מלאי
        """

    @abstractmethod
    async def reserve(self, items: list[CartLine]) -> list[CartLine]:
        """שמירת מלאי - הכל או כלום. Raises OutOfStockError."""

    @abstractmethod
    async def release(self, items: list[CartLine]) -> None:
        """החזרת מלאי שנשמר (compensation)."""


class SqlCatalogService(CatalogService):
    """מימוש מעל טבלת products"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load_products(self, product_ids: list[int]) -> dict[int, Product]:
        result = await self.db.execute(select(Product).where(Product.id.in_(product_ids)))
        return {p.id: p for p in result.scalars().all()}

    async def validate_items(self, items: list[CartLine]) -> list[CartLine]:
        if not items:
            raise ValidationException("Cart is empty", field="items")

        products = await self._load_products([line.product_id for line in items])
        validated: list[CartLine] = []
        for line in items:
            if line.quantity <= 0:
                raise ValidationException(
                    f"Invalid quantity for product {line.product_id}", field="quantity"
                )
            product = products.get(line.product_id)
            if product is None or not product.is_active:
                raise ValidationException(
                    f"Product {line.product_id} is no longer available",
                    field="product_id",
                    details={"product_id": line.product_id},
                )
            if product.stock < line.quantity:
                raise OutOfStockError(product.id, line.quantity, product.stock)
            validated.append(CartLine(
                product_id=product.id,
                quantity=line.quantity,
                unit_price=Decimal(product.price),
                name=product.name,
            ))
        return validated

    async def reserve(self, items: list[CartLine]) -> list[CartLine]:
        for line in items:
            result = await self.db.execute(
                update(Product)
                .where(Product.id == line.product_id, Product.stock >= line.quantity)
                .values(stock=Product.stock - line.quantity)
            )
            if result.rowcount != 1:
                # ביטול ההורדות שכבר בוצעו בטרנזקציה הזו
                await self.db.rollback()
                available = await self.db.execute(
                    select(Product.stock).where(Product.id == line.product_id)
                )
                raise OutOfStockError(
                    line.product_id, line.quantity, available.scalar_one_or_none() or 0
                )
        await self.db.commit()
        logger.info(
            "Inventory reserved",
            extra_data={"lines": [(line.product_id, line.quantity) for line in items]},
        )
        return items

    async def release(self, items: list[CartLine]) -> None:
        for line in items:
            await self.db.execute(
                update(Product)
                .where(Product.id == line.product_id)
                .values(stock=Product.stock + line.quantity)
            )
        await self.db.commit()
        logger.info(
            "Inventory released",
            extra_data={"lines": [(line.product_id, line.quantity) for line in items]},
        )
