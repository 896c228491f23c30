"""
הזרקת ה-ServiceContainer ל-endpoints.

שימוש:
    @router.post("/checkout")
    async def checkout(
        ...,
        services: ServiceContainer = Depends(get_services),
    ):
        ...
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.database import get_db
from app.domain.container import ServiceContainer, build_container


async def get_services(db: AsyncSession = Depends(get_db)) -> ServiceContainer:
    """container חדש לכל בקשה, קשור ל-session שלה"""
    return build_container(db)
