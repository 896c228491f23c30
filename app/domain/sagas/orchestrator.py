"""
Saga Orchestrator - הרצת צעדים לפי הסדר עם compensation בסדר הפוך.

- כל ניסיון של צעד רץ תחת asyncio.wait_for (SagaStepTimeoutError בחריגה).
- retry רק לשגיאות זמניות, backoff של min(0.1 * 2**attempt, 2.0) שניות.
- כשלון בצעד לא קריטי נרשם וממשיכים; כשלון בצעד קריטי עוצר ומפעיל
  compensation על כל הצעדים שהצליחו, מהאחרון לראשון.
- saga קיים עם אותו מזהה: completed / compensated / failed מחזירים את
  התוצאה השמורה, running / compensating זורקים SagaConcurrentExecutionError.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from app.core.config import settings
from app.core.event_bus import Publisher
from app.core.exceptions import (
    ErrorKind,
    SagaCompensationError,
    SagaConcurrentExecutionError,
    SagaStepError,
    SagaStepTimeoutError,
    error_kind_of,
)
from app.core.logging import bind_log_context, get_logger, log_async_operation
from app.db.models.saga_execution import SagaStatus
from app.domain.sagas.state_store import SagaStateStore

logger = get_logger(__name__)

StepAction = Callable[[dict[str, Any]], Awaitable[Any]]
StepCompensation = Callable[[dict[str, Any]], Awaitable[None]]

MAX_RETRY_DELAY_SECONDS = 2.0


def retry_delay(attempt: int) -> float:
    return min(0.1 * (2 ** attempt), MAX_RETRY_DELAY_SECONDS)


@dataclass
class SagaStep:
    name: str
    action: StepAction
    compensation: Optional[StepCompensation] = None
    critical: bool = True
    max_retries: int = 0
    timeout_seconds: Optional[float] = None
    # הצעד עלול להשאיר תופעת לוואי גם כשנכשל (חיוב שנקלט לפני כשלון מאוחר יותר)
    compensate_on_failure: bool = False


@dataclass
class SagaResult:
    saga_id: str
    success: bool
    failed_step: Optional[str] = None
    error: Optional[str] = None
    compensated: bool = False
    step_results: dict[str, Any] = field(default_factory=dict)
    compensation_errors: dict[str, str] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    # החריגה המקורית של הצעד שנכשל (לא נשמרת - None בתוצאה משוחזרת)
    cause: Optional[BaseException] = None

    @property
    def is_fully_compensated(self) -> bool:
        return not self.success and self.compensated and not self.compensation_errors

    def get_step_result(self, step_name: str) -> Any:
        return self.step_results.get(step_name)


@dataclass
class _CompletedStep:
    step: SagaStep
    result: Any
    context: dict[str, Any]


class SagaOrchestrator:
    def __init__(
        self,
        state_store: SagaStateStore,
        event_bus: Publisher | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.state_store = state_store
        self.event_bus = event_bus
        self._sleep = sleep

    @log_async_operation("saga_execute")
    async def execute(
        self,
        saga_id: str,
        saga_type: str,
        context: dict[str, Any],
        steps: list[SagaStep],
    ) -> SagaResult:
        with bind_log_context(saga_id=saga_id, saga_type=saga_type):
            return await self._run(saga_id, saga_type, context, steps)

    async def _run(
        self,
        saga_id: str,
        saga_type: str,
        context: dict[str, Any],
        steps: list[SagaStep],
    ) -> SagaResult:
        existing = await self.state_store.get(saga_id)
        if existing is not None:
            return self._existing_result(existing)

        if not await self.state_store.create(saga_id, saga_type, context, SagaStatus.RUNNING):
            # נוצר במקביל ע"י קורא אחר
            existing = await self.state_store.get(saga_id)
            return self._existing_result(existing)

        current = dict(context)
        current["saga_id"] = saga_id
        current["saga_type"] = saga_type
        step_results: dict[str, Any] = {}
        step_log: list[dict[str, Any]] = []
        completed: list[_CompletedStep] = []

        for step in steps:
            try:
                result, attempts = await self._run_step(saga_id, step, current)
            except SagaStepError as exc:
                step_log.append({
                    "name": step.name,
                    "status": "failed",
                    "error": str(exc.cause or exc),
                    "attempts": exc.details.get("attempts", 1),
                })
                if step.critical:
                    return await self._fail(saga_id, saga_type, step, exc, current, step_results, step_log, completed)
                logger.warning(
                    "Non-critical saga step failed, continuing",
                    extra_data={"saga_id": saga_id, "step": step.name, "error": str(exc)},
                )
                step_results[step.name] = {"error": str(exc.cause or exc), "skipped": True}
                current["step_results"] = step_results
                continue

            step_results[step.name] = result
            current["step_results"] = step_results
            current["last_result"] = result
            completed.append(_CompletedStep(step, result, dict(current)))
            step_log.append({"name": step.name, "status": "completed", "result": result, "attempts": attempts})
            await self.state_store.update(saga_id, context=current, steps=step_log)

        await self.state_store.update(saga_id, status=SagaStatus.COMPLETED, context=current, steps=step_log)
        await self._emit("saga.completed", {"saga_id": saga_id, "saga_type": saga_type})
        return SagaResult(saga_id=saga_id, success=True, step_results=step_results, context=current)

    async def _run_step(self, saga_id: str, step: SagaStep, context: dict[str, Any]) -> tuple[Any, int]:
        timeout = step.timeout_seconds or settings.SAGA_STEP_TIMEOUT_SECONDS
        attempt = 0
        while True:
            try:
                result = await asyncio.wait_for(step.action(context), timeout=timeout)
                return result, attempt + 1
            except asyncio.TimeoutError:
                error: SagaStepError = SagaStepTimeoutError(step.name, timeout)
                error.details["attempts"] = attempt + 1
                raise error
            except Exception as exc:
                if error_kind_of(exc) == ErrorKind.TRANSIENT and attempt < step.max_retries:
                    delay = retry_delay(attempt)
                    logger.info(
                        "Retrying saga step",
                        extra_data={
                            "saga_id": saga_id,
                            "step": step.name,
                            "attempt": attempt + 1,
                            "delay_seconds": delay,
                        },
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue
                if isinstance(exc, SagaStepError):
                    exc.details["attempts"] = attempt + 1
                    raise
                error = SagaStepError(step.name, exc)
                error.details["attempts"] = attempt + 1
                raise error from exc

    async def _fail(
        self,
        saga_id: str,
        saga_type: str,
        step: SagaStep,
        error: SagaStepError,
        context: dict[str, Any],
        step_results: dict[str, Any],
        step_log: list[dict[str, Any]],
        completed: list[_CompletedStep],
    ) -> SagaResult:
        cause = error.cause or error
        logger.warning(
            "Saga step failed, compensating",
            extra_data={"saga_id": saga_id, "step": step.name, "error": str(cause)},
        )
        await self.state_store.update(
            saga_id,
            status=SagaStatus.COMPENSATING,
            steps=step_log,
            failed_step=step.name,
            error=str(cause),
        )

        if step.compensate_on_failure and step.compensation is not None:
            completed = [*completed, _CompletedStep(step, None, dict(context))]
        compensation_errors = await self._compensate(saga_id, completed, step_log)
        compensated = not compensation_errors
        await self.state_store.update(
            saga_id,
            status=SagaStatus.COMPENSATED if compensated else SagaStatus.FAILED,
            compensated=compensated,
            context=context,
            steps=step_log,
        )

        result = SagaResult(
            saga_id=saga_id,
            success=False,
            failed_step=step.name,
            error=str(cause),
            compensated=compensated,
            step_results=step_results,
            compensation_errors=compensation_errors,
            context=context,
            cause=cause,
        )

        if compensation_errors:
            logger.critical(
                "Saga compensation failed, manual intervention required",
                extra_data={
                    "saga_id": saga_id,
                    "saga_type": saga_type,
                    "failed_step": step.name,
                    "compensation_errors": compensation_errors,
                },
            )
            await self._emit("saga.compensation_failed", {
                "saga_id": saga_id,
                "saga_type": saga_type,
                "failed_step": step.name,
                "compensation_errors": compensation_errors,
            })
            raise SagaCompensationError(saga_id, step.name, compensation_errors, result)

        await self._emit("saga.compensated", {
            "saga_id": saga_id,
            "saga_type": saga_type,
            "failed_step": step.name,
        })
        return result

    async def _compensate(
        self,
        saga_id: str,
        completed: list[_CompletedStep],
        step_log: list[dict[str, Any]],
    ) -> dict[str, str]:
        errors: dict[str, str] = {}
        entries = {entry["name"]: entry for entry in step_log}

        for done in reversed(completed):
            step = done.step
            if step.compensation is None:
                continue
            context = dict(done.context)
            context["compensation_for"] = step.name
            context["step_result"] = done.result
            timeout = step.timeout_seconds or settings.SAGA_STEP_TIMEOUT_SECONDS
            entry = entries[step.name]
            # הצעד שנכשל שומר את הסטטוס failed; תוצאת הפיצוי נרשמת לצידו
            status_field = "compensation" if entry["status"] == "failed" else "status"
            try:
                await asyncio.wait_for(step.compensation(context), timeout=timeout)
            except Exception as exc:
                message = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc)
                errors[step.name] = message
                entry[status_field] = "compensation_failed"
                entry["compensation_error"] = message
                logger.error(
                    "Saga compensation step failed",
                    extra_data={"saga_id": saga_id, "step": step.name, "error": message},
                    exc_info=True,
                )
                continue
            entry[status_field] = "compensated"
            logger.info("Saga step compensated", extra_data={"saga_id": saga_id, "step": step.name})
        return errors

    def _existing_result(self, existing: dict[str, Any]) -> SagaResult:
        saga_id = existing["saga_id"]
        status = SagaStatus(existing["status"])
        if status in (SagaStatus.RUNNING, SagaStatus.COMPENSATING, SagaStatus.PENDING):
            logger.warning(
                "Saga already in progress",
                extra_data={"saga_id": saga_id, "status": status.value},
            )
            raise SagaConcurrentExecutionError(saga_id)

        context = existing.get("context") or {}
        logger.info(
            "Returning stored saga result",
            extra_data={"saga_id": saga_id, "status": status.value},
        )
        if status == SagaStatus.COMPLETED:
            return SagaResult(
                saga_id=saga_id,
                success=True,
                step_results=context.get("step_results", {}),
                context=context,
            )

        compensation_errors = {
            entry["name"]: entry.get("compensation_error", "")
            for entry in existing.get("steps") or []
            if "compensation_failed" in (entry.get("status"), entry.get("compensation"))
        }
        return SagaResult(
            saga_id=saga_id,
            success=False,
            failed_step=existing.get("failed_step"),
            error=existing.get("error")
            or ("Saga was previously compensated" if status == SagaStatus.COMPENSATED else "Saga previously failed"),
            compensated=status == SagaStatus.COMPENSATED,
            step_results=context.get("step_results", {}),
            compensation_errors=compensation_errors,
            context=context,
        )

    async def get_saga_state(self, saga_id: str) -> dict[str, Any] | None:
        return await self.state_store.get(saga_id)

    async def get_pending_sagas(self, older_than_minutes: int = 5) -> list[dict[str, Any]]:
        return await self.state_store.get_pending(older_than_minutes)

    async def _emit(self, event: str, data: dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event, data)
