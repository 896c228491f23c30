"""
Commerce Hub - Main FastAPI Application
"""
from fastapi import FastAPI
from sqlalchemy import text

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.routes import router as api_router
from app.db.database import engine, Base
import app.db.models  # noqa: F401 - רישום כל הטבלות ב-Base.metadata

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {
        "name": "Webhooks",
        "description": "קליטת webhooks מ-WhatsApp Cloud API ומשערי תשלום (Stripe / Razorpay / PIX).",
    },
    {"name": "Checkout", "description": "הפיכת עגלה להזמנה דרך checkout saga."},
    {
        "name": "Admin",
        "description": "תפעול: circuit breakers, dead letters, סטטיסטיקות תור ו-sagas תקועים.",
    },
    {"name": "Health", "description": "בדיקות חיוּת ומוכנות."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "שכבת אמינות ל-WhatsApp commerce: idempotency, circuit breakers, "
        "תור עדיפויות עם dead letters ו-checkout saga."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    from app.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Probe)",
    description=(
        "בדיקה קלה שהתהליך חי ומגיב. "
        "לא בודק תלויות חיצוניות - כדי למנוע restart מיותר בגלל כשלון DB/Redis."
    ),
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness probe - התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Probe)",
    description="בדיקת DB וסטטוס ה-circuit breakers. 503 כשה-DB לא זמין.",
    tags=["Health"],
)
async def readiness_check():
    """Readiness probe - DB + circuit breakers."""
    from starlette.responses import JSONResponse

    from app.core.circuit_breaker import CircuitBreaker

    result: dict[str, str] = {"status": "healthy"}
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        result["db"] = "ok"
    except Exception as exc:
        logger.warning("Readiness check: database unavailable", extra_data={"error": str(exc)})
        result["db"] = f"error: {type(exc).__name__}"
        result["status"] = "degraded"

    for breaker in CircuitBreaker.all_instances():
        result[f"circuit_{breaker.service_name}"] = breaker.state.value

    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
