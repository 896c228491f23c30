"""
Job Dispatcher - נקודת הכניסה לתזמון jobs משאר המערכת.
"""
from __future__ import annotations

from typing import Any

from app.db.models.job import Job
from app.domain.services.priority_queue import JobPriority, PriorityQueue


class JobDispatcher:
    """dispatch / is_scheduled מעל PriorityQueue"""

    def __init__(self, queue: PriorityQueue):
        self.queue = queue

    async def dispatch(
        self,
        hook_name: str,
        payload: dict[str, Any],
        delay_seconds: int = 0,
        priority: JobPriority | int = JobPriority.NORMAL,
        claim_token: str | None = None,
        max_attempts: int | None = None,
    ) -> Job | None:
        return await self.queue.schedule(
            hook_name,
            payload,
            priority=priority,
            delay_seconds=delay_seconds,
            max_attempts=max_attempts,
            claim_token=claim_token,
        )

    async def is_scheduled(self, hook_name: str, payload: dict[str, Any]) -> bool:
        return await self.queue.is_scheduled(hook_name, payload)
