"""
Job Runner - שליפת jobs שהגיע זמנם והרצתם דרך ה-processor הרשום ל-hook.

process_due_jobs (Celery beat) קורא ל-run_due_jobs. job עם hook לא מוכר
עובר ישירות ל-DLQ (unknown_hook).
"""
from __future__ import annotations

from collections import Counter
from typing import Any

from sqlalchemy import inspect

from app.core.logging import get_logger
from app.db.models.dead_letter_entry import DeadLetterReason
from app.db.models.job import Job
from app.domain.processors.base import ProcessingOutcome
from app.domain.processors.registry import ProcessorRegistry
from app.domain.services.dead_letter_queue import DeadLetterQueue
from app.domain.services.priority_queue import (
    DirectDispatchLifecycle,
    JobLifecycle,
    PriorityQueue,
    detached_job,
)

logger = get_logger(__name__)


class JobRunner:
    def __init__(
        self,
        queue: PriorityQueue,
        dead_letters: DeadLetterQueue,
        registry: ProcessorRegistry,
    ):
        self.queue = queue
        self.dead_letters = dead_letters
        self.registry = registry

    async def run_due_jobs(self, worker_id: str, limit: int | None = None) -> dict[str, int]:
        """
        Returns:
            מונה תוצאות לפי ProcessingOutcome (וגם "error" לחריגה לא צפויה)
        """
        jobs = await self.queue.claim_due_jobs(worker_id, limit)
        job_ids = [job.id for job in jobs]
        summary: Counter[str] = Counter()
        for job, job_id in zip(jobs, job_ids):
            try:
                if inspect(job).expired_attributes:
                    # rollback של job קודם באותו batch מסמן את כל ה-session כ-expired
                    await self.queue.db.refresh(job)
                outcome = await self.run_job(job)
            except Exception as exc:
                # ה-job נשאר running - recover_stuck_jobs יחזיר אותו לתור
                await self.queue.db.rollback()
                logger.error(
                    "Unexpected error while running job",
                    extra_data={"job_id": job_id, "error": str(exc)},
                    exc_info=True,
                )
                summary["error"] += 1
                continue
            summary[outcome.value] += 1

        if jobs:
            logger.info(
                "Processed due jobs",
                extra_data={"worker_id": worker_id, "claimed": len(jobs), **summary},
            )
        return dict(summary)

    async def run_job(self, job: Job, lifecycle: JobLifecycle | None = None) -> ProcessingOutcome:
        processor = self.registry.get(job.hook_name)
        if processor is None:
            lifecycle = lifecycle or self.queue
            error = f"No processor registered for hook '{job.hook_name}'"
            logger.error("Unknown job hook", extra_data={"job_id": job.id, "hook": job.hook_name})
            await self.dead_letters.push(job, DeadLetterReason.UNKNOWN_HOOK, error)
            await lifecycle.mark_dead(job, error)
            return ProcessingOutcome.DEAD
        return await processor.execute(job, lifecycle)

    async def run_job_by_id(self, job_id: int, worker_id: str) -> ProcessingOutcome | None:
        """הרצה ישירה של job (task run_job). None אם ה-job לא ממתין."""
        job = await self.queue.claim_job(job_id, worker_id)
        if job is None:
            logger.info("Job not pending, skipping direct run", extra_data={"job_id": job_id})
            return None
        return await self.run_job(job)

    async def run_payload(self, hook_name: str, payload: dict[str, Any]) -> ProcessingOutcome:
        """job שנשלח ישירות ל-Celery כשטבלת jobs חסרה"""
        job = detached_job(hook_name, payload)
        return await self.run_job(job, DirectDispatchLifecycle(self.queue))
