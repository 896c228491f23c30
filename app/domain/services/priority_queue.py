"""
Priority Queue - תור jobs עם עדיפויות, backoff ו-retry אידמפוטנטי.

jobs נשמרים בטבלת jobs ונשלפים ע"י process_due_jobs (Celery beat) לפי
עדיפות ואז run_after. כל job נתפס ב-UPDATE מותנה (WHERE status='pending'),
כך ש-worker אחד בלבד זוכה בו.

כשטבלת jobs חסרה, ה-job נשלח ישירות ל-Celery (send_task עם countdown)
וסימון TTL ב-KeyValueStore עונה על is_scheduled.
"""
from __future__ import annotations

import enum
import hashlib
import json
import time
from datetime import timedelta
from typing import Any, Callable, Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.event_bus import Publisher
from app.core.key_value_store import KeyValueStore
from app.core.logging import get_logger
from app.db.database import is_missing_table_error, utcnow
from app.db.models.idempotency_claim import IdempotencyScope
from app.db.models.job import Job, JobStatus
from app.domain.services.idempotency_service import IdempotencyService, generate_key

logger = get_logger(__name__)

PAYLOAD_VERSION = 2
GROUP_PREFIX = "wch-"


class JobPriority(enum.IntEnum):
    CRITICAL = 1
    URGENT = 2
    NORMAL = 3
    BULK = 4
    MAINTENANCE = 5

    @property
    def group(self) -> str:
        return GROUP_PREFIX + self.name.lower()


# jobs לדקה לכל קבוצת עדיפות
PRIORITY_RATE_LIMITS: dict[JobPriority, int] = {
    JobPriority.CRITICAL: 1000,
    JobPriority.URGENT: 100,
    JobPriority.NORMAL: 50,
    JobPriority.BULK: 20,
    JobPriority.MAINTENANCE: 10,
}

_FALLBACK_MARKER_PREFIX = "job:scheduled"
_FALLBACK_TASK = "app.workers.tasks.send_dispatched_job"


def coerce_priority(value: Any) -> JobPriority:
    """עדיפות מחוץ לטווח נחתכת ל-1..5"""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return JobPriority.NORMAL
    return JobPriority(max(1, min(5, number)))


def calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    backoff = base_seconds * (2 ** retry_count), חסום ב-max_backoff_seconds.

    לא מחשב חזקות ענקיות כש-retry_count גדול באופן לא צפוי.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # האם 2**retry_count >= ceil(max/base) - בלי לחשב את החזקה
    required_multiplier = (max_backoff_seconds + base_seconds - 1) // base_seconds
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


def wrap_payload(
    args: dict[str, Any],
    priority: JobPriority = JobPriority.NORMAL,
    *,
    attempt: int = 1,
    claim_token: str | None = None,
    scheduled_at: int | None = None,
    **extra_meta: Any,
) -> dict[str, Any]:
    """מעטפת גרסה 2: {"_version": 2, "_meta": {...}, "args": {...}}"""
    meta: dict[str, Any] = {
        "priority": int(priority),
        "scheduled_at": scheduled_at if scheduled_at is not None else int(time.time()),
        "attempt": attempt,
        "last_retry": None,
    }
    if claim_token:
        meta["claim_token"] = claim_token
    meta.update(extra_meta)
    return {"_version": PAYLOAD_VERSION, "_meta": meta, "args": dict(args)}


def unwrap_payload(payload: dict[str, Any] | None) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    פירוק מעטפת ל-(args, meta).

    dict ישן ללא מעטפת מוחזר כ-args עם meta ברירת מחדל.
    """
    payload = payload or {}
    if payload.get("_version") == PAYLOAD_VERSION and isinstance(payload.get("args"), dict):
        meta = dict(payload.get("_meta") or {})
        meta.setdefault("priority", int(JobPriority.NORMAL))
        meta.setdefault("attempt", 1)
        return dict(payload["args"]), meta
    return dict(payload), {"priority": int(JobPriority.NORMAL), "attempt": 1, "legacy": True}


def hash_args(args: dict[str, Any]) -> str:
    encoded = json.dumps(args, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _send_via_celery(task_name: str, args: list[Any], countdown: int) -> None:
    from app.workers.celery_app import celery_app

    celery_app.send_task(task_name, args=args, countdown=countdown)


class PriorityQueue:
    """תור jobs מבוסס DB"""

    def __init__(
        self,
        db: AsyncSession,
        kv_store: KeyValueStore,
        idempotency: IdempotencyService,
        event_bus: Publisher | None = None,
        task_sender: Callable[[str, list[Any], int], Any] | None = None,
    ):
        self.db = db
        self.kv_store = kv_store
        self.idempotency = idempotency
        self.event_bus = event_bus
        self._task_sender = task_sender or _send_via_celery

    # ── תזמון ──

    async def schedule(
        self,
        hook_name: str,
        args: dict[str, Any],
        priority: JobPriority | int = JobPriority.NORMAL,
        delay_seconds: int = 0,
        max_attempts: int | None = None,
        claim_token: str | None = None,
        **extra_meta: Any,
    ) -> Job | None:
        """
        הכנסת job לתור.

        Returns:
            ה-Job שנוצר, או None כשה-job נשלח ישירות ל-Celery (טבלה חסרה).
        """
        priority = coerce_priority(priority)
        payload = wrap_payload(args, priority, claim_token=claim_token, **extra_meta)
        job = Job(
            hook_name=hook_name,
            payload=payload,
            payload_hash=hash_args(args),
            priority=int(priority),
            attempt_count=0,
            max_attempts=max_attempts or settings.QUEUE_DEFAULT_MAX_ATTEMPTS,
            run_after=utcnow() + timedelta(seconds=max(0, delay_seconds)),
            status=JobStatus.PENDING,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(job)
            await self.db.commit()
        except (OperationalError, ProgrammingError) as exc:
            if not is_missing_table_error(exc):
                raise
            await self._fallback_dispatch(hook_name, args, payload, delay_seconds)
            return None

        logger.info(
            "Job scheduled",
            extra_data={
                "job_id": job.id,
                "hook": hook_name,
                "priority": priority.name,
                "group": priority.group,
                "delay_seconds": delay_seconds,
            },
        )
        return job

    async def schedule_retry(self, job: Job, error: BaseException | str) -> bool:
        """
        תזמון ניסיון חוזר עם exponential backoff.

        אידמפוטנטי לכל (job_id, attempt) דרך claim ב-scope sync - שני workers
        שמדווחים על אותו כשלון לא יגדילו את attempt_count פעמיים.
        """
        attempt = job.attempt_count
        retry_key = generate_key("job_retry", job.id, attempt)
        claim = await self.idempotency.claim(retry_key, IdempotencyScope.SYNC)
        if not claim.is_claimed:
            logger.info(
                "Retry already scheduled by another worker",
                extra_data={"job_id": job.id, "attempt": attempt},
            )
            return False

        delay = calculate_backoff_seconds(
            attempt,
            base_seconds=settings.QUEUE_RETRY_BASE_SECONDS,
            max_backoff_seconds=settings.QUEUE_MAX_BACKOFF_SECONDS,
        )
        now = utcnow()

        args, meta = unwrap_payload(job.payload)
        meta["attempt"] = attempt + 2
        meta["last_retry"] = int(time.time())

        job.attempt_count = attempt + 1
        job.status = JobStatus.PENDING
        job.run_after = now + timedelta(seconds=delay)
        job.locked_by = None
        job.locked_at = None
        job.last_error = str(error)[:1000]
        job.payload = {"_version": PAYLOAD_VERSION, "_meta": meta, "args": args}
        await self.db.commit()
        await self.idempotency.complete(retry_key, IdempotencyScope.SYNC)

        logger.info(
            "Job retry scheduled",
            extra_data={
                "job_id": job.id,
                "hook": job.hook_name,
                "attempt_count": job.attempt_count,
                "delay_seconds": delay,
            },
        )
        await self._emit("job.retry_scheduled", {
            "job_id": job.id,
            "hook_name": job.hook_name,
            "attempt_count": job.attempt_count,
            "delay_seconds": delay,
        })
        return True

    async def reschedule_without_penalty(self, job: Job, delay_seconds: float) -> None:
        """דחייה בלי לספור ניסיון (circuit breaker פתוח)"""
        job.status = JobStatus.PENDING
        job.run_after = utcnow() + timedelta(seconds=max(1, int(delay_seconds)))
        job.locked_by = None
        job.locked_at = None
        await self.db.commit()
        logger.info(
            "Job deferred without penalty",
            extra_data={"job_id": job.id, "hook": job.hook_name, "delay_seconds": delay_seconds},
        )

    # ── שליפה ועדכון מצב ──

    async def claim_due_jobs(
        self,
        worker_id: str,
        limit: int | None = None,
        respect_rate_limits: bool = True,
    ) -> list[Job]:
        """
        תפיסת jobs שהגיע זמנם.

        כל job נתפס ב-UPDATE מותנה - אם worker אחר הקדים, rowcount=0 ומדלגים.
        """
        limit = limit or settings.QUEUE_BATCH_SIZE
        now = utcnow()
        try:
            result = await self.db.execute(
                select(Job.id, Job.priority)
                .where(Job.status == JobStatus.PENDING, Job.run_after <= now)
                .order_by(Job.priority, Job.run_after, Job.id)
                .limit(limit)
            )
            candidates = result.all()
        except (OperationalError, ProgrammingError) as exc:
            if not is_missing_table_error(exc):
                raise
            await self.db.rollback()
            logger.warning("jobs table missing, nothing to claim")
            return []

        claimed_ids: list[int] = []
        for job_id, priority in candidates:
            if respect_rate_limits and not await self.check_rate_limit(priority):
                continue
            taken = await self.db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == JobStatus.PENDING)
                .values(status=JobStatus.RUNNING, locked_by=worker_id, locked_at=now)
            )
            if taken.rowcount == 1:
                claimed_ids.append(job_id)
        await self.db.commit()

        if not claimed_ids:
            return []

        jobs = await self.db.execute(
            select(Job)
            .where(Job.id.in_(claimed_ids))
            .order_by(Job.priority, Job.run_after, Job.id)
            .execution_options(populate_existing=True)
        )
        return list(jobs.scalars().all())

    async def get_job(self, job_id: int) -> Job | None:
        result = await self.db.execute(select(Job).where(Job.id == job_id))
        return result.scalar_one_or_none()

    async def claim_job(self, job_id: int, worker_id: str) -> Job | None:
        """תפיסת job בודד (run_job ישיר). None אם worker אחר הקדים."""
        taken = await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.PENDING)
            .values(status=JobStatus.RUNNING, locked_by=worker_id, locked_at=utcnow())
        )
        await self.db.commit()
        if taken.rowcount != 1:
            return None
        result = await self.db.execute(
            select(Job).where(Job.id == job_id).execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def mark_done(self, job: Job) -> None:
        job.status = JobStatus.DONE
        job.locked_by = None
        job.locked_at = None
        await self.db.commit()

    async def mark_dead(self, job: Job, error: BaseException | str | None = None) -> None:
        job.status = JobStatus.DEAD
        job.locked_by = None
        job.locked_at = None
        if error is not None:
            job.last_error = str(error)[:1000]
        await self.db.commit()

    # ── שאילתות ──

    async def is_scheduled(self, hook_name: str, args: dict[str, Any]) -> bool:
        """האם קיים job ממתין או רץ עם אותם args"""
        args_hash = hash_args(args)
        try:
            result = await self.db.execute(
                select(Job.id).where(
                    Job.hook_name == hook_name,
                    Job.payload_hash == args_hash,
                    Job.status.in_([JobStatus.PENDING, JobStatus.RUNNING]),
                ).limit(1)
            )
        except (OperationalError, ProgrammingError) as exc:
            if not is_missing_table_error(exc):
                raise
            await self.db.rollback()
            marker = await self.kv_store.get(self._marker_key(hook_name, args_hash))
            return marker is not None
        return result.scalar_one_or_none() is not None

    async def cancel(self, hook_name: str, args: dict[str, Any]) -> int:
        """ביטול jobs ממתינים (לא רצים) עם אותם args"""
        result = await self.db.execute(
            delete(Job).where(
                Job.hook_name == hook_name,
                Job.payload_hash == hash_args(args),
                Job.status == JobStatus.PENDING,
            )
        )
        await self.db.commit()
        return result.rowcount

    async def get_stats(self) -> dict[str, Any]:
        by_status = await self.db.execute(
            select(Job.status, func.count()).group_by(Job.status)
        )
        pending_by_priority = await self.db.execute(
            select(Job.priority, func.count())
            .where(Job.status == JobStatus.PENDING)
            .group_by(Job.priority)
        )
        oldest = await self.db.execute(
            select(func.min(Job.run_after)).where(Job.status == JobStatus.PENDING)
        )
        oldest_run_after = oldest.scalar_one_or_none()

        return {
            "by_status": {status.value: count for status, count in by_status.all()},
            "pending_by_group": {
                coerce_priority(priority).group: count
                for priority, count in pending_by_priority.all()
            },
            "oldest_pending_seconds": (
                int((utcnow() - oldest_run_after).total_seconds())
                if oldest_run_after is not None else None
            ),
        }

    async def check_rate_limit(self, priority: JobPriority | int) -> bool:
        """
        חלון דקה לכל קבוצת עדיפות - incr אטומי ב-KeyValueStore.

        True אם ה-job נכנס במכסה.
        """
        priority = coerce_priority(priority)
        window = time.strftime("%Y%m%d%H%M", time.gmtime())
        count = await self.kv_store.incr(f"rate:{priority.group}:{window}", ttl=120)
        allowed = count <= PRIORITY_RATE_LIMITS[priority]
        if not allowed:
            logger.warning(
                "Queue rate limit reached",
                extra_data={"group": priority.group, "count": count},
            )
        return allowed

    # ── תחזוקה ──

    async def recover_stuck_jobs(self, stale_after_seconds: int = 600) -> int:
        """jobs שנשארו running (worker קרס) חוזרים ל-pending"""
        threshold = utcnow() - timedelta(seconds=stale_after_seconds)
        result = await self.db.execute(
            update(Job)
            .where(Job.status == JobStatus.RUNNING, Job.locked_at < threshold)
            .values(status=JobStatus.PENDING, locked_by=None, locked_at=None)
        )
        await self.db.commit()
        if result.rowcount:
            logger.warning("Recovered stuck jobs", extra_data={"count": result.rowcount})
        return result.rowcount

    async def cleanup_old_jobs(self, days: int = 7) -> int:
        cutoff = utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(Job).where(Job.status == JobStatus.DONE, Job.updated_at < cutoff)
        )
        await self.db.commit()
        return result.rowcount

    # ── fallback ──

    @staticmethod
    def _marker_key(hook_name: str, args_hash: str) -> str:
        return f"{_FALLBACK_MARKER_PREFIX}:{hook_name}:{args_hash}"

    async def _fallback_dispatch(
        self,
        hook_name: str,
        args: dict[str, Any],
        payload: dict[str, Any],
        delay_seconds: int,
    ) -> None:
        logger.warning(
            "jobs table missing, dispatching directly to Celery",
            extra_data={"hook": hook_name, "delay_seconds": delay_seconds},
        )
        self._task_sender(_FALLBACK_TASK, [hook_name, payload], max(0, delay_seconds))
        await self.kv_store.set(
            self._marker_key(hook_name, hash_args(args)),
            {"scheduled_at": int(time.time())},
            ttl=max(0, delay_seconds) + 300,
        )

    async def clear_fallback_marker(self, hook_name: str, args: dict[str, Any]) -> None:
        await self.kv_store.delete(self._marker_key(hook_name, hash_args(args)))

    async def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event, data)


class JobLifecycle(Protocol):
    """פעולות מחזור חיים של job שה-processor מפעיל בסוף עיבוד"""

    async def schedule_retry(self, job: Job, error: BaseException | str) -> bool: ...

    async def reschedule_without_penalty(self, job: Job, delay_seconds: float) -> None: ...

    async def mark_done(self, job: Job) -> None: ...

    async def mark_dead(self, job: Job, error: BaseException | str | None = None) -> None: ...


class DirectDispatchLifecycle:
    """
    מחזור חיים ל-job שנשלח ישירות ל-Celery (טבלת jobs חסרה).

    ה-Job לא שמור ב-DB: retry ודחייה נשלחים כ-task חדש עם countdown.
    """

    def __init__(self, queue: PriorityQueue):
        self.queue = queue

    async def schedule_retry(self, job: Job, error: BaseException | str) -> bool:
        attempt = job.attempt_count
        retry_key = generate_key("job_retry", job.hook_name, job.payload_hash, attempt)
        claim = await self.queue.idempotency.claim(retry_key, IdempotencyScope.SYNC)
        if not claim.is_claimed:
            return False

        delay = calculate_backoff_seconds(
            attempt,
            base_seconds=settings.QUEUE_RETRY_BASE_SECONDS,
            max_backoff_seconds=settings.QUEUE_MAX_BACKOFF_SECONDS,
        )
        args, meta = unwrap_payload(job.payload)
        meta["attempt"] = attempt + 2
        meta["last_retry"] = int(time.time())
        job.attempt_count = attempt + 1
        job.payload = {"_version": PAYLOAD_VERSION, "_meta": meta, "args": args}

        await self.queue._fallback_dispatch(job.hook_name, args, job.payload, delay)
        await self.queue.idempotency.complete(retry_key, IdempotencyScope.SYNC)
        return True

    async def reschedule_without_penalty(self, job: Job, delay_seconds: float) -> None:
        args, _meta = unwrap_payload(job.payload)
        await self.queue._fallback_dispatch(
            job.hook_name, args, job.payload, max(1, int(delay_seconds))
        )

    async def mark_done(self, job: Job) -> None:
        args, _meta = unwrap_payload(job.payload)
        await self.queue.clear_fallback_marker(job.hook_name, args)

    async def mark_dead(self, job: Job, error: BaseException | str | None = None) -> None:
        args, _meta = unwrap_payload(job.payload)
        await self.queue.clear_fallback_marker(job.hook_name, args)


def detached_job(hook_name: str, payload: dict[str, Any]) -> Job:
    """Job לא שמור עבור payload שהגיע ישירות מ-Celery"""
    args, meta = unwrap_payload(payload)
    priority = coerce_priority(meta.get("priority"))
    return Job(
        id=None,
        hook_name=hook_name,
        payload=payload if payload.get("_version") == PAYLOAD_VERSION else wrap_payload(args, priority),
        payload_hash=hash_args(args),
        priority=int(priority),
        attempt_count=max(0, int(meta.get("attempt", 1)) - 1),
        max_attempts=settings.QUEUE_DEFAULT_MAX_ATTEMPTS,
        status=JobStatus.RUNNING,
    )
