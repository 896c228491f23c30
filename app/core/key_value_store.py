"""
Key-Value Store - ממשק אחיד לאחסון זמני עם TTL.

משמש כ-fallback לטבלאות חסרות (idempotency, jobs, dead letters), לשיתוף מצב
circuit breaker בין workers, ל-rate limiting ולמניעת התראות כפולות.

שני מימושים:
- InMemoryKeyValueStore - תהליך בודד, לפיתוח ובדיקות (לא שורד restart).
- RedisKeyValueStore - משותף לכל ה-workers, מעל redis.asyncio.

ערכים נשמרים כ-JSON, כך שאפשר להחליף מימוש בלי לשנות את הקוראים.
"""
from __future__ import annotations

import json
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis

from app.core.logging import get_logger

logger = get_logger(__name__)


class KeyValueStore(ABC):
    """ממשק key-value עם TTL בשניות (None = ללא תפוגה)."""

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """החזרת ערך או None אם לא קיים / פג תוקף."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """שמירת ערך (דורס ערך קיים)."""

    @abstractmethod
    async def add(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """שמירה רק אם המפתח לא קיים. מחזיר True אם נשמר - פעולה אטומית."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """מחיקה. מחזיר True אם המפתח היה קיים."""

    @abstractmethod
    async def incr(self, key: str, ttl: int | None = None) -> int:
        """הגדלה אטומית ב-1. TTL מוגדר רק ביצירת המפתח."""

    @abstractmethod
    async def keys(self, prefix: str) -> list[str]:
        """כל המפתחות שמתחילים ב-prefix (לסטטיסטיקות ו-fallback listing)."""


class InMemoryKeyValueStore(KeyValueStore):
    """
    מימוש in-process עם TTL.

    מוגן ב-threading.Lock - Celery workers עשויים להריץ כמה event loops באותו תהליך.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and self._clock() >= expires_at

    def _read(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if self._expired(expires_at):
            del self._data[key]
            return None
        return raw

    def _expiry(self, ttl: int | None) -> float | None:
        return self._clock() + ttl if ttl else None

    async def get(self, key: str) -> Any | None:
        with self._lock:
            raw = self._read(key)
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        with self._lock:
            self._data[key] = (json.dumps(value, default=str), self._expiry(ttl))

    async def add(self, key: str, value: Any, ttl: int | None = None) -> bool:
        with self._lock:
            if self._read(key) is not None:
                return False
            self._data[key] = (json.dumps(value, default=str), self._expiry(ttl))
            return True

    async def delete(self, key: str) -> bool:
        with self._lock:
            existed = self._read(key) is not None
            self._data.pop(key, None)
            return existed

    async def incr(self, key: str, ttl: int | None = None) -> int:
        with self._lock:
            raw = self._read(key)
            if raw is None:
                self._data[key] = ("1", self._expiry(ttl))
                return 1
            value = int(json.loads(raw)) + 1
            self._data[key] = (json.dumps(value), self._data[key][1])
            return value

    async def keys(self, prefix: str) -> list[str]:
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._read(k) is not None]

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class RedisKeyValueStore(KeyValueStore):
    """
    מימוש מעל Redis - משותף לכל התהליכים.

    מקבל factory אסינכרוני ולא client, כדי שכל task של Celery יקבל את ה-client
    של ה-event loop הנוכחי (ראה app.core.redis_client).
    """

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[aioredis.Redis]],
        namespace: str = "wch",
    ) -> None:
        self._client_factory = client_factory
        self._namespace = namespace

    def _k(self, key: str) -> str:
        return f"{self._namespace}:{key}"

    async def get(self, key: str) -> Any | None:
        client = await self._client_factory()
        raw = await client.get(self._k(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        client = await self._client_factory()
        await client.set(self._k(key), json.dumps(value, default=str), ex=ttl or None)

    async def add(self, key: str, value: Any, ttl: int | None = None) -> bool:
        client = await self._client_factory()
        stored = await client.set(
            self._k(key), json.dumps(value, default=str), nx=True, ex=ttl or None
        )
        return bool(stored)

    async def delete(self, key: str) -> bool:
        client = await self._client_factory()
        removed = await client.delete(self._k(key))
        return bool(removed)

    async def incr(self, key: str, ttl: int | None = None) -> int:
        client = await self._client_factory()
        value = await client.incr(self._k(key))
        if value == 1 and ttl:
            await client.expire(self._k(key), ttl)
        return int(value)

    async def keys(self, prefix: str) -> list[str]:
        client = await self._client_factory()
        full_prefix = self._k(prefix)
        strip = len(self._namespace) + 1
        return [k[strip:] async for k in client.scan_iter(match=f"{full_prefix}*")]


_default_store: KeyValueStore | None = None
_default_lock = threading.Lock()


def get_key_value_store() -> KeyValueStore:
    """
    ה-store של האפליקציה לפי KEY_VALUE_BACKEND.

    נבנה פעם אחת בתהליך; ב-Redis ה-client עצמו נלקח מחדש בכל קריאה.
    """
    global _default_store
    if _default_store is not None:
        return _default_store

    with _default_lock:
        if _default_store is None:
            from app.core.config import settings

            if settings.KEY_VALUE_BACKEND == "redis":
                from app.core import redis_client

                async def _factory() -> aioredis.Redis:
                    return await redis_client.get_redis()

                _default_store = RedisKeyValueStore(_factory)
            else:
                _default_store = InMemoryKeyValueStore()
            logger.info(
                "Key-value store initialized",
                extra_data={"backend": settings.KEY_VALUE_BACKEND},
            )
    return _default_store


def set_key_value_store(store: KeyValueStore | None) -> None:
    """החלפת ה-store (בדיקות / composition root)."""
    global _default_store
    with _default_lock:
        _default_store = store
