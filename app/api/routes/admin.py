"""
Admin Endpoints - ניטור ותחזוקה של שכבת האמינות ללא גישה ישירה ל-DB.

1. circuit breakers - סטטוס, פתיחה וסגירה ידנית
2. dead letters - רשימה, סטטיסטיקה, replay ו-dismiss
3. סטטיסטיקות תור ו-idempotency, sagas תקועים
"""
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.services import get_services
from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.logging import get_logger
from app.db.models.dead_letter_entry import DeadLetterReason, DeadLetterStatus
from app.domain.container import ServiceContainer

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])


# ─── Pydantic models ────────────────────────────────────────────────────────

class CircuitBreakerStatusResponse(BaseModel):
    """סטטוס של circuit breaker בודד"""
    service: str
    state: str = Field(description="closed | open | half_open")
    consecutive_failures: int
    failure_threshold: int
    retry_after_seconds: float = Field(
        description="שניות עד שניסיון חוזר אפשרי (0 אם לא פתוח)"
    )
    last_failure_reason: str | None = None
    total_failures: int = 0
    total_successes: int = 0


class CircuitBreakerActionRequest(BaseModel):
    reason: str = Field(default="manual", max_length=200)


class DeadLetterResponse(BaseModel):
    """רשומת dead letter בודדת"""
    id: int
    job_id: int | None
    hook_name: str
    payload: dict[str, Any]
    priority: int
    reason: DeadLetterReason
    error_message: str | None
    error_kind: str | None
    attempts: int
    status: DeadLetterStatus
    created_at: datetime | None
    replayed_at: datetime | None
    replayed_job_id: int | None

    model_config = ConfigDict(from_attributes=True)


class ReplayRequest(BaseModel):
    delay_seconds: int = Field(default=0, ge=0, le=86400)
    priority: Optional[int] = Field(default=None, ge=1, le=5)


class ReplayResponse(BaseModel):
    entry_id: int
    job_id: int | None = Field(description="None כשה-job נכנס בנתיב ה-fallback")


class DismissRequest(BaseModel):
    note: Optional[str] = Field(default=None, max_length=500)


# ─── Circuit breakers ───────────────────────────────────────────────────────

def _breaker_or_404(services: ServiceContainer, service: str) -> CircuitBreaker:
    breaker = services.breakers.get(service)
    if breaker is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown service '{service}'. Known: {', '.join(sorted(services.breakers))}",
        )
    return breaker


@router.get(
    "/circuit-breakers",
    response_model=list[CircuitBreakerStatusResponse],
    summary="סטטוס circuit breakers",
    description="מצב כל ה-breakers, אחרי טעינת ה-snapshot המשותף בין ה-workers.",
)
async def list_circuit_breakers(services: ServiceContainer = Depends(get_services)):
    statuses = []
    for breaker in services.breakers.values():
        await services.circuit_store.load(breaker)
        statuses.append(CircuitBreakerStatusResponse(**breaker.get_metrics()))
    return statuses


@router.post(
    "/circuit-breakers/{service}/open",
    response_model=CircuitBreakerStatusResponse,
    summary="פתיחה ידנית של circuit breaker",
    responses={404: {"description": "שירות לא מוכר"}},
)
async def open_circuit_breaker(
    service: str,
    body: CircuitBreakerActionRequest | None = None,
    services: ServiceContainer = Depends(get_services),
):
    breaker = _breaker_or_404(services, service)
    breaker.open((body or CircuitBreakerActionRequest()).reason)
    await services.circuit_store.save(breaker)
    logger.warning("Circuit breaker opened by admin", extra_data={"service": service})
    return CircuitBreakerStatusResponse(**breaker.get_metrics())


@router.post(
    "/circuit-breakers/{service}/close",
    response_model=CircuitBreakerStatusResponse,
    summary="סגירה ידנית של circuit breaker",
    responses={404: {"description": "שירות לא מוכר"}},
)
async def close_circuit_breaker(
    service: str,
    services: ServiceContainer = Depends(get_services),
):
    breaker = _breaker_or_404(services, service)
    breaker.close()
    await services.circuit_store.clear(service)
    logger.info("Circuit breaker closed by admin", extra_data={"service": service})
    return CircuitBreakerStatusResponse(**breaker.get_metrics())


# ─── Dead letters ───────────────────────────────────────────────────────────

@router.get(
    "/dead-letters",
    response_model=list[DeadLetterResponse],
    summary="רשומות dead letter ממתינות",
)
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    reason: Optional[DeadLetterReason] = Query(None),
    services: ServiceContainer = Depends(get_services),
):
    return await services.dead_letters.get_pending(limit=limit, offset=offset, reason=reason)


@router.get("/dead-letters/stats", summary="סטטיסטיקת dead letters")
async def dead_letter_stats(services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    return await services.dead_letters.get_stats()


@router.post(
    "/dead-letters/{entry_id}/replay",
    response_model=ReplayResponse,
    summary="הפעלה מחדש של רשומת dead letter",
    responses={
        400: {"description": "הרשומה כבר טופלה"},
        404: {"description": "הרשומה לא קיימת"},
    },
)
async def replay_dead_letter(
    entry_id: int,
    body: ReplayRequest | None = None,
    services: ServiceContainer = Depends(get_services),
):
    body = body or ReplayRequest()
    # NotFoundException / ValidationException מטופלים ב-exception handler
    job = await services.dead_letters.replay(
        entry_id,
        delay_seconds=body.delay_seconds,
        new_priority=body.priority,
    )
    return ReplayResponse(entry_id=entry_id, job_id=job.id if job is not None else None)


@router.post(
    "/dead-letters/{entry_id}/dismiss",
    summary="סימון רשומת dead letter כ-dismissed",
    responses={404: {"description": "הרשומה לא קיימת או כבר טופלה"}},
)
async def dismiss_dead_letter(
    entry_id: int,
    body: DismissRequest | None = None,
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    note = body.note if body else None
    if not await services.dead_letters.dismiss(entry_id, note):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Dead letter entry {entry_id} not found or not pending",
        )
    return {"entry_id": entry_id, "status": "dismissed"}


# ─── Queue / idempotency / sagas ───────────────────────────────────────────

@router.get("/queue/stats", summary="סטטיסטיקת תור עדיפויות")
async def queue_stats(services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    return await services.queue.get_stats()


@router.get("/idempotency/stats", summary="סטטיסטיקת claims")
async def idempotency_stats(services: ServiceContainer = Depends(get_services)) -> dict[str, Any]:
    return await services.idempotency.get_stats()


@router.get("/sagas/pending", summary="sagas תקועים במצב פעיל")
async def pending_sagas(
    older_than_minutes: int = Query(settings.SAGA_STUCK_AFTER_MINUTES, ge=0),
    services: ServiceContainer = Depends(get_services),
) -> list[dict[str, Any]]:
    sagas = await services.orchestrator.get_pending_sagas(older_than_minutes)
    # context יכול להכיל כתובת וטלפון - לא נחשף כאן
    return [{key: value for key, value in saga.items() if key != "context"} for saga in sagas]


@router.get("/sagas/{saga_id}", summary="מצב saga בודד")
async def saga_status(
    saga_id: str,
    services: ServiceContainer = Depends(get_services),
) -> dict[str, Any]:
    state = await services.checkout_saga.get_order_status(saga_id)
    if state is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Saga not found")
    return state
