"""
Queue Processor - בסיס לכל ה-processors שמריצים jobs מהתור.

execute() הוא ה-runner המשותף: claim אידמפוטנטי, בדיקת circuit breaker,
הרצת process() עם timeout, ואז retry / dead letter לפי סוג השגיאה.
processor קונקרטי מממש רק process() ו-idempotency_key().
"""
from __future__ import annotations

import asyncio
import enum
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.event_bus import Publisher
from app.core.exceptions import (
    AppException,
    CircuitBreakerOpenError,
    ErrorKind,
    ServiceTimeoutError,
    ValidationException,
    error_kind_of,
)
from app.core.logging import bind_log_context, get_logger
from app.db.models.idempotency_claim import IdempotencyScope
from app.db.models.job import Job
from app.domain.services.circuit_state_store import CircuitStateStore
from app.domain.services.dead_letter_queue import DeadLetterQueue, reason_for
from app.domain.services.idempotency_service import IdempotencyService
from app.domain.services.priority_queue import JobLifecycle, PriorityQueue, unwrap_payload

logger = get_logger(__name__)


class ProcessingOutcome(str, enum.Enum):
    DONE = "done"
    SKIPPED = "skipped"      # כבר עובד / דילוג מכוון (opt-out, שעות שקטות)
    DEFERRED = "deferred"    # circuit פתוח - נדחה בלי לספור ניסיון
    RETRY = "retry"
    DEAD = "dead"


@dataclass
class ProcessorDependencies:
    idempotency: IdempotencyService
    queue: PriorityQueue
    dead_letters: DeadLetterQueue
    circuit_store: CircuitStateStore
    event_bus: Publisher | None = None


class QueueProcessor(ABC):
    """Base class for queue job processors"""

    name: str = "processor"
    hook_name: str = ""
    scope: IdempotencyScope = IdempotencyScope.WEBHOOK
    max_retries: int = 3
    timeout_seconds: float = 60.0

    def __init__(
        self,
        deps: ProcessorDependencies,
        circuit_breaker: CircuitBreaker | None = None,
    ):
        self.deps = deps
        self.circuit_breaker = circuit_breaker

    @abstractmethod
    async def process(self, payload: dict[str, Any]) -> Any:
        """עיבוד ה-job. כשלון = AppException עם kind מתאים."""

    @abstractmethod
    def idempotency_key(self, payload: dict[str, Any]) -> str:
        ...

    async def preflight(self, payload: dict[str, Any]) -> str | None:
        """
        בדיקה לפני circuit breaker ושליחה.

        Returns:
            סיבת דילוג (ה-job מסומן done בלי retry), או None להמשך עיבוד.
        """
        return None

    def should_retry(self, error: BaseException) -> bool:
        return error_kind_of(error) == ErrorKind.TRANSIENT

    def counts_against_circuit(self, error: BaseException) -> bool:
        return error_kind_of(error) == ErrorKind.TRANSIENT

    def is_circuit_open(self) -> bool:
        """בדיקה בלבד - לא צורכת את קריאת הניסיון של half-open"""
        breaker = self.circuit_breaker
        return breaker is not None and breaker.is_open and breaker.get_retry_after() > 0

    def ensure_circuit_available(self) -> None:
        """נקרא מיד לפני הקריאה החיצונית"""
        breaker = self.circuit_breaker
        if breaker is not None and not breaker.is_available():
            raise CircuitBreakerOpenError(breaker.service_name, breaker.get_retry_after())

    async def execute(self, job: Job, lifecycle: JobLifecycle | None = None) -> ProcessingOutcome:
        with bind_log_context(job_id=job.id, hook=self.hook_name):
            return await self._execute(job, lifecycle)

    async def _execute(self, job: Job, lifecycle: JobLifecycle | None = None) -> ProcessingOutcome:
        lifecycle = lifecycle or self.deps.queue
        idempotency = self.deps.idempotency
        args, meta = unwrap_payload(job.payload)
        log_data = {"job_id": job.id, "hook": self.hook_name, "attempt": job.attempt_count + 1}

        try:
            key = self.idempotency_key(args)
        except (AppException, KeyError, TypeError, ValueError) as exc:
            error = exc if isinstance(exc, AppException) else ValidationException(str(exc))
            return await self._dead_letter(job, lifecycle, None, error, exhausted=False)

        claim = await idempotency.claim(key, self.scope, owner_token=meta.get("claim_token"))
        if not claim.is_claimed:
            logger.info(
                "Job skipped, event already handled",
                extra_data={**log_data, "claim": claim.value},
            )
            await lifecycle.mark_done(job)
            return ProcessingOutcome.SKIPPED

        if self.circuit_breaker is not None:
            await self.deps.circuit_store.load(self.circuit_breaker)

        try:
            skip_reason = await self.preflight(args)
        except Exception as exc:
            return await self._handle_failure(job, lifecycle, key, exc)
        if skip_reason:
            await idempotency.complete(key, self.scope)
            await lifecycle.mark_done(job)
            logger.info("Job skipped", extra_data={**log_data, "reason": skip_reason})
            return ProcessingOutcome.SKIPPED

        if self.is_circuit_open():
            return await self._defer(job, lifecycle, key, self.circuit_breaker.get_retry_after())

        started = time.monotonic()
        try:
            await asyncio.wait_for(self.process(args), timeout=self.timeout_seconds)
        except CircuitBreakerOpenError as exc:
            await self._reset_session(job)
            return await self._defer(job, lifecycle, key, exc.retry_after_seconds)
        except asyncio.TimeoutError:
            error = ServiceTimeoutError(self.name, self.timeout_seconds)
            return await self._handle_failure(job, lifecycle, key, error)
        except Exception as exc:
            return await self._handle_failure(job, lifecycle, key, exc)

        await idempotency.complete(key, self.scope)
        if self.circuit_breaker is not None:
            self.circuit_breaker.record_success()
            await self.deps.circuit_store.save(self.circuit_breaker)
        await lifecycle.mark_done(job)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info("Job processed", extra_data={**log_data, "duration_ms": duration_ms})
        await self._emit("job.completed", {
            "job_id": job.id,
            "hook_name": self.hook_name,
            "processor": self.name,
            "duration_ms": duration_ms,
        })
        return ProcessingOutcome.DONE

    async def _handle_failure(
        self,
        job: Job,
        lifecycle: JobLifecycle,
        key: str,
        error: BaseException,
    ) -> ProcessingOutcome:
        await self._reset_session(job)
        kind = error_kind_of(error)

        if self.circuit_breaker is not None and self.counts_against_circuit(error):
            self.circuit_breaker.record_failure(error)
            await self.deps.circuit_store.save(self.circuit_breaker)

        if kind == ErrorKind.ALREADY_PROCESSED:
            await self.deps.idempotency.complete(key, self.scope)
            await lifecycle.mark_done(job)
            return ProcessingOutcome.SKIPPED

        attempt_limit = min(self.max_retries, job.max_attempts or self.max_retries)
        retryable = self.should_retry(error)
        if retryable and job.attempt_count + 1 < attempt_limit:
            logger.warning(
                "Job failed, scheduling retry",
                extra_data={
                    "job_id": job.id,
                    "hook": self.hook_name,
                    "attempt": job.attempt_count + 1,
                    "error": str(error),
                    "error_kind": kind.value,
                },
            )
            await self.deps.idempotency.release(key, self.scope)
            await lifecycle.schedule_retry(job, error)
            return ProcessingOutcome.RETRY

        return await self._dead_letter(job, lifecycle, key, error, exhausted=retryable)

    async def _dead_letter(
        self,
        job: Job,
        lifecycle: JobLifecycle,
        key: str | None,
        error: BaseException,
        exhausted: bool,
    ) -> ProcessingOutcome:
        if key is not None:
            await self.deps.idempotency.release(key, self.scope)
        reason = reason_for(error, exhausted)
        logger.error(
            "Job failed permanently",
            extra_data={
                "job_id": job.id,
                "hook": self.hook_name,
                "reason": reason.value,
                "error": str(error),
            },
        )
        await self.deps.dead_letters.push(job, reason, error)
        await lifecycle.mark_dead(job, error)
        return ProcessingOutcome.DEAD

    async def _defer(
        self,
        job: Job,
        lifecycle: JobLifecycle,
        key: str,
        retry_after: float,
    ) -> ProcessingOutcome:
        await self.deps.idempotency.release(key, self.scope)
        delay = retry_after if retry_after > 0 else settings.QUEUE_CIRCUIT_OPEN_DELAY_SECONDS
        await lifecycle.reschedule_without_penalty(job, delay)
        return ProcessingOutcome.DEFERRED

    async def _reset_session(self, job: Job) -> None:
        """ביטול שינויים חלקיים של process() לפני עדכון מצב ה-job"""
        db = self.deps.queue.db
        await db.rollback()
        # rollback מסמן את ה-job כ-expired; גישה לשדה תגרום ל-lazy load סינכרוני
        if job in db:
            await db.refresh(job)

    async def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self.deps.event_bus is not None:
            await self.deps.event_bus.emit(event, data)
