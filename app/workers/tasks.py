"""
Celery Tasks - צד ה-worker של תור העדיפויות.

process_due_jobs שולף jobs שהגיע זמנם ומריץ אותם דרך ה-processor של ה-hook.
run_job מריץ job בודד לפי id; send_dispatched_job מריץ job שנשלח ישירות
ל-Celery כשטבלת jobs חסרה. שאר ה-tasks הם תחזוקה תקופתית.
"""
from __future__ import annotations

import asyncio
import os
import socket
from contextlib import contextmanager
from typing import Any

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.domain.container import build_container
from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

WORKER_ID = f"{socket.gethostname()}:{os.getpid()}"


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Redis singleton מחובר ל-loop הזה - נסגר לפני סגירת ה-loop
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "כשלון בסגירת Redis בסיום task",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


async def _load_breakers(services) -> None:
    """מצב ה-breakers המשותף נטען לפני הרצת jobs - worker אחר אולי כבר פתח אותו"""
    for breaker in services.breakers.values():
        await services.circuit_store.load(breaker)


# ──────────────────────────────────────────────
#  הרצת jobs
# ──────────────────────────────────────────────


@celery_app.task(name="app.workers.tasks.process_due_jobs")
def process_due_jobs(limit: int | None = None):
    """שליפת jobs שהגיע זמנם לפי עדיפות והרצתם"""

    async def _process():
        async with get_task_session() as db:
            services = build_container(db)
            await _load_breakers(services)
            return await services.runner.run_due_jobs(
                WORKER_ID, limit or settings.QUEUE_BATCH_SIZE
            )

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.run_job")
def run_job(job_id: int):
    """הרצה ישירה של job בודד לפי id"""

    async def _run():
        async with get_task_session() as db:
            services = build_container(db)
            await _load_breakers(services)
            outcome = await services.runner.run_job_by_id(job_id, WORKER_ID)
            return {"job_id": job_id, "outcome": outcome.value if outcome else None}

    return run_async(_run())


@celery_app.task(name="app.workers.tasks.send_dispatched_job")
def send_dispatched_job(hook_name: str, payload: dict[str, Any]):
    """job שנשלח ישירות ל-Celery (טבלת jobs חסרה) - retry נשלח כ-task חדש"""

    async def _run():
        async with get_task_session() as db:
            services = build_container(db)
            await _load_breakers(services)
            outcome = await services.runner.run_payload(hook_name, payload)
            return {"hook_name": hook_name, "outcome": outcome.value}

    return run_async(_run())


# ──────────────────────────────────────────────
#  תחזוקה
# ──────────────────────────────────────────────


@celery_app.task(name="app.workers.tasks.recover_stuck_jobs")
def recover_stuck_jobs(stale_after_seconds: int = 600):
    """jobs שנשארו running (worker קרס) חוזרים ל-pending"""

    async def _recover():
        async with get_task_session() as db:
            services = build_container(db)
            recovered = await services.queue.recover_stuck_jobs(stale_after_seconds)
            return {"recovered": recovered}

    return run_async(_recover())


@celery_app.task(name="app.workers.tasks.cleanup_idempotency_claims")
def cleanup_idempotency_claims():
    """מחיקת claims שהושלמו ופג תוקפם"""

    async def _cleanup():
        async with get_task_session() as db:
            services = build_container(db)
            deleted = await services.idempotency.cleanup()
            logger.info("Cleaned up expired idempotency claims", extra_data={"deleted": deleted})
            return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_dead_letters")
def cleanup_dead_letters(days_old: int = 30):
    """מחיקת dead letters שטופלו (replayed / dismissed) ישנים"""

    async def _cleanup():
        async with get_task_session() as db:
            services = build_container(db)
            deleted = await services.dead_letters.cleanup(days_old)
            logger.info(
                "Cleaned up handled dead letters",
                extra_data={"deleted": deleted, "days_old": days_old},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.cleanup_old_jobs")
def cleanup_old_jobs(days: int = 7):
    """מחיקת jobs שהסתיימו (done) ישנים"""

    async def _cleanup():
        async with get_task_session() as db:
            services = build_container(db)
            deleted = await services.queue.cleanup_old_jobs(days)
            logger.info("Cleaned up old jobs", extra_data={"deleted": deleted, "days": days})
            return {"deleted": deleted}

    return run_async(_cleanup())


@celery_app.task(name="app.workers.tasks.report_stuck_sagas")
def report_stuck_sagas(older_than_minutes: int | None = None):
    """
    sagas שתקועים במצב פעיל (running / compensating) - דיווח בלבד.

    saga תקוע לא מופעל מחדש אוטומטית: ייתכן שחלק מהצעדים בוצעו.
    """
    minutes = older_than_minutes or settings.SAGA_STUCK_AFTER_MINUTES

    async def _report():
        async with get_task_session() as db:
            services = build_container(db)
            stuck = await services.orchestrator.get_pending_sagas(minutes)
            for saga in stuck:
                logger.error(
                    "Saga stuck in active state",
                    extra_data={
                        "saga_id": saga["saga_id"],
                        "saga_type": saga["saga_type"],
                        "status": saga["status"],
                        "updated_at": saga["updated_at"],
                    },
                )
            return {"stuck": len(stuck)}

    return run_async(_report())
