"""
Dead Letter Queue - jobs שנכשלו סופית, לבדיקה ידנית ו-replay.

push נקרא ע"י ה-runner כשנגמרו הניסיונות או כשהשגיאה לא ניתנת ל-retry.
replay יוצר job חדש (attempt 1) ומסמן את הרשומה replayed - ה-job המקורי
נשאר dead.
"""
from __future__ import annotations

import uuid
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.event_bus import Publisher
from app.core.exceptions import (
    ErrorKind,
    NotFoundException,
    ServiceTimeoutError,
    ValidationException,
    error_kind_of,
)
from app.core.key_value_store import KeyValueStore
from app.core.logging import get_logger
from app.db.database import is_missing_table_error, utcnow
from app.db.models.dead_letter_entry import DeadLetterEntry, DeadLetterReason, DeadLetterStatus
from app.db.models.job import Job
from app.domain.services.priority_queue import PriorityQueue, unwrap_payload

logger = get_logger(__name__)

FALLBACK_PREFIX = "dlq:fallback"
FALLBACK_TTL_SECONDS = 7 * 24 * 3600


class DeadLetterQueue:
    """DLQ מבוסס DB עם fallback ל-KeyValueStore"""

    def __init__(
        self,
        db: AsyncSession,
        kv_store: KeyValueStore,
        queue: PriorityQueue,
        event_bus: Publisher | None = None,
    ):
        self.db = db
        self.kv_store = kv_store
        self.queue = queue
        self.event_bus = event_bus

    async def push(
        self,
        job: Job,
        reason: DeadLetterReason,
        error: BaseException | str | None = None,
    ) -> DeadLetterEntry | None:
        """העברת job ל-DLQ"""
        return await self.push_payload(
            job.hook_name,
            job.payload,
            reason,
            error,
            job_id=job.id,
            priority=job.priority,
            attempts=job.attempt_count + 1,
        )

    async def push_payload(
        self,
        hook_name: str,
        payload: dict[str, Any],
        reason: DeadLetterReason,
        error: BaseException | str | None = None,
        *,
        job_id: int | None = None,
        priority: int = 3,
        attempts: int = 0,
    ) -> DeadLetterEntry | None:
        """
        העברת payload ל-DLQ בלי Job (dispatch ישיר ל-Celery).

        Returns:
            הרשומה שנוצרה, או None כשנכתבה ל-fallback.
        """
        error_message = str(error)[:4000] if error is not None else None
        error_kind = (
            error_kind_of(error).value if isinstance(error, BaseException) else None
        )
        entry = DeadLetterEntry(
            job_id=job_id,
            hook_name=hook_name,
            payload=payload,
            priority=priority,
            reason=reason,
            error_message=error_message,
            error_kind=error_kind,
            attempts=attempts,
            status=DeadLetterStatus.PENDING,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(entry)
            await self.db.commit()
        except (OperationalError, ProgrammingError) as exc:
            if not is_missing_table_error(exc):
                raise
            await self._fallback_push(hook_name, payload, reason, error_message, job_id)
            return None

        logger.warning(
            "Job moved to dead letter queue",
            extra_data={
                "entry_id": entry.id,
                "job_id": job_id,
                "hook": hook_name,
                "reason": reason.value,
                "error_kind": error_kind,
                "attempts": attempts,
            },
        )
        await self._emit("job.dead_lettered", {
            "entry_id": entry.id,
            "job_id": job_id,
            "hook_name": hook_name,
            "reason": reason.value,
        })
        return entry

    async def get(self, entry_id: int) -> DeadLetterEntry | None:
        result = await self.db.execute(
            select(DeadLetterEntry).where(DeadLetterEntry.id == entry_id)
        )
        return result.scalar_one_or_none()

    async def get_pending(
        self,
        limit: int = 50,
        offset: int = 0,
        reason: DeadLetterReason | None = None,
    ) -> list[DeadLetterEntry]:
        query = select(DeadLetterEntry).where(
            DeadLetterEntry.status == DeadLetterStatus.PENDING
        )
        if reason is not None:
            query = query.where(DeadLetterEntry.reason == reason)
        result = await self.db.execute(
            query.order_by(DeadLetterEntry.created_at.desc(), DeadLetterEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def replay(
        self,
        entry_id: int,
        delay_seconds: int = 0,
        new_priority: int | None = None,
    ) -> Job | None:
        """
        הפעלה מחדש של רשומה ממתינה כ-job חדש עם attempt 1.

        Raises:
            NotFoundException: הרשומה לא קיימת
            ValidationException: הרשומה כבר טופלה (replayed / dismissed)
        """
        entry = await self.get(entry_id)
        if entry is None:
            raise NotFoundException("DeadLetterEntry", entry_id)
        if entry.status != DeadLetterStatus.PENDING:
            raise ValidationException(
                f"Dead letter entry {entry_id} is already {entry.status.value}",
                field="status",
            )

        args, _meta = unwrap_payload(entry.payload)
        job = await self.queue.schedule(
            entry.hook_name,
            args,
            priority=new_priority or entry.priority,
            delay_seconds=delay_seconds,
            replayed_from_dlq=entry.id,
        )

        entry.status = DeadLetterStatus.REPLAYED
        entry.replayed_at = utcnow()
        entry.replayed_job_id = job.id if job is not None else None
        await self.db.commit()

        logger.info(
            "Dead letter entry replayed",
            extra_data={
                "entry_id": entry.id,
                "hook": entry.hook_name,
                "new_job_id": entry.replayed_job_id,
            },
        )
        await self._emit("job.replayed", {
            "entry_id": entry.id,
            "hook_name": entry.hook_name,
            "job_id": entry.replayed_job_id,
        })
        return job

    async def dismiss(self, entry_id: int, note: str | None = None) -> bool:
        """סימון רשומה כ-dismissed (לא תופעל מחדש)"""
        entry = await self.get(entry_id)
        if entry is None or entry.status != DeadLetterStatus.PENDING:
            return False
        entry.status = DeadLetterStatus.DISMISSED
        await self.db.commit()
        logger.info(
            "Dead letter entry dismissed",
            extra_data={"entry_id": entry_id, "note": note},
        )
        return True

    async def get_stats(self) -> dict[str, Any]:
        by_status = await self.db.execute(
            select(DeadLetterEntry.status, func.count()).group_by(DeadLetterEntry.status)
        )
        by_reason = await self.db.execute(
            select(DeadLetterEntry.reason, func.count())
            .where(DeadLetterEntry.status == DeadLetterStatus.PENDING)
            .group_by(DeadLetterEntry.reason)
        )
        by_hook = await self.db.execute(
            select(DeadLetterEntry.hook_name, func.count())
            .where(DeadLetterEntry.status == DeadLetterStatus.PENDING)
            .group_by(DeadLetterEntry.hook_name)
        )
        status_counts = {status.value: count for status, count in by_status.all()}
        return {
            "total": sum(status_counts.values()),
            "by_status": status_counts,
            "pending_by_reason": {reason.value: count for reason, count in by_reason.all()},
            "pending_by_hook": dict(by_hook.all()),
            "fallback_entries": len(await self.kv_store.keys(FALLBACK_PREFIX)),
        }

    async def cleanup(self, days_old: int = 30) -> int:
        """מחיקת רשומות replayed / dismissed ישנות. pending לא נמחקות."""
        cutoff = utcnow() - timedelta(days=days_old)
        result = await self.db.execute(
            delete(DeadLetterEntry).where(
                DeadLetterEntry.status.in_(
                    [DeadLetterStatus.REPLAYED, DeadLetterStatus.DISMISSED]
                ),
                DeadLetterEntry.created_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount

    async def _fallback_push(
        self,
        hook_name: str,
        payload: dict[str, Any],
        reason: DeadLetterReason,
        error_message: str | None,
        job_id: int | None,
    ) -> None:
        key = f"{FALLBACK_PREFIX}:{uuid.uuid4()}"
        await self.kv_store.set(
            key,
            {
                "hook_name": hook_name,
                "payload": payload,
                "reason": reason.value,
                "error_message": error_message,
                "job_id": job_id,
                "created_at": utcnow().isoformat(),
            },
            ttl=FALLBACK_TTL_SECONDS,
        )
        logger.error(
            "dead_letter_entries table missing, entry kept in key-value store",
            extra_data={"key": key, "hook": hook_name, "reason": reason.value},
        )

    async def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event, data)


def reason_for(error: BaseException | None, exhausted: bool) -> DeadLetterReason:
    """סיבת DLQ לפי סוג השגיאה"""
    kind = error_kind_of(error)
    if kind in (ErrorKind.VALIDATION, ErrorKind.NOT_FOUND):
        return DeadLetterReason.VALIDATION_FAILED
    if kind == ErrorKind.CIRCUIT_OPEN:
        return DeadLetterReason.CIRCUIT_BREAKER_OPEN
    if isinstance(error, (TimeoutError, ServiceTimeoutError)):
        return DeadLetterReason.TIMEOUT
    if exhausted:
        return DeadLetterReason.MAX_RETRIES_EXCEEDED
    return DeadLetterReason.EXCEPTION
