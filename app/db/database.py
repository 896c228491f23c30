"""
Database Connection and Session Management
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy.exc import DBAPIError, OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()

# PostgreSQL: undefined_table
_PG_UNDEFINED_TABLE = "42P01"


async def get_db() -> AsyncSession:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_session():
    """
    Create a fresh database session for Celery tasks.

    This creates a new engine and session bound to the current event loop,
    avoiding the "attached to a different loop" error that occurs when
    reusing module-level engines across different event loops in Celery workers.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10
    )
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with task_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()

    await task_engine.dispose()


def is_missing_table_error(exc: BaseException) -> bool:
    """
    האם השגיאה נובעת מטבלה שלא קיימת (מיגרציה שלא רצה).

    שירותי idempotency / queue / dead-letter עוברים במקרה כזה ל-KeyValueStore
    במקום לקרוס.
    """
    if not isinstance(exc, (ProgrammingError, OperationalError, DBAPIError)):
        return False
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == _PG_UNDEFINED_TABLE:
        return True
    # SQLite ו-asyncpg עטוף: אין קוד מובנה, רק הודעה
    text = str(orig if orig is not None else exc).lower()
    return "no such table" in text or ("relation" in text and "does not exist" in text)


def utcnow() -> datetime:
    """UTC נאיבי - עקבי בין PostgreSQL (TIMESTAMP) ל-SQLite בבדיקות."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
