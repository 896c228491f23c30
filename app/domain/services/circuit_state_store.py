"""
Circuit State Store - שיתוף מצב circuit breaker בין workers.

ה-breaker עצמו בזיכרון התהליך; snapshot נשמר ב-KeyValueStore תחת
circuit:<service> כך ש-worker אחר שנתקל באותו שירות יודע שהוא פתוח.
"""
from __future__ import annotations

from app.core.circuit_breaker import CircuitBreaker
from app.core.key_value_store import KeyValueStore
from app.core.logging import get_logger

logger = get_logger(__name__)

_PREFIX = "circuit"
# snapshot ישן מיום לא רלוונטי - נמחק מעצמו
_SNAPSHOT_TTL_SECONDS = 86400


class CircuitStateStore:
    def __init__(self, kv_store: KeyValueStore):
        self.kv_store = kv_store

    @staticmethod
    def key_for(service_name: str) -> str:
        return f"{_PREFIX}:{service_name}"

    async def load(self, breaker: CircuitBreaker) -> bool:
        """טעינת snapshot לתוך ה-breaker. False אם אין snapshot שמור."""
        snapshot = await self.kv_store.get(self.key_for(breaker.service_name))
        if not snapshot:
            return False
        breaker.restore(snapshot)
        return True

    async def save(self, breaker: CircuitBreaker) -> None:
        await self.kv_store.set(
            self.key_for(breaker.service_name),
            breaker.snapshot(),
            ttl=_SNAPSHOT_TTL_SECONDS,
        )

    async def clear(self, service_name: str) -> None:
        await self.kv_store.delete(self.key_for(service_name))
