"""
Saga State Store - שמירת מצב ויומן צעדים של saga.

create() הוא נקודת המניעה ההדדית: INSERT על המפתח הראשי saga_id - רק
קורא אחד יוצר את ה-saga, השאר מקבלים False ומטפלים ב-saga הקיים.
כשטבלת saga_executions חסרה, המצב נשמר ב-KeyValueStore.
"""
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.key_value_store import KeyValueStore
from app.core.logging import get_logger
from app.db.database import is_missing_table_error, utcnow
from app.db.models.saga_execution import SagaExecution, SagaStatus

logger = get_logger(__name__)

ACTIVE_STATUSES = (SagaStatus.PENDING, SagaStatus.RUNNING, SagaStatus.COMPENSATING)

_KV_PREFIX = "saga"
_KV_TTL_SECONDS = 7 * 24 * 3600


def to_jsonable(value: Any) -> Any:
    """Decimal / datetime וכו' הופכים למחרוזות - העמודה היא JSON"""
    return json.loads(json.dumps(value, default=str))


class SagaStateStore(ABC):
    @abstractmethod
    async def create(
        self,
        saga_id: str,
        saga_type: str,
        context: dict[str, Any],
        status: SagaStatus = SagaStatus.RUNNING,
    ) -> bool:
        """False אם saga עם אותו מזהה כבר קיים"""

    @abstractmethod
    async def get(self, saga_id: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    async def update(self, saga_id: str, **fields: Any) -> None:
        """עדכון status / context / steps / compensated / failed_step / error"""

    @abstractmethod
    async def get_pending(self, older_than_minutes: int = 5) -> list[dict[str, Any]]:
        """sagas שתקועים במצב פעיל יותר מ-older_than_minutes"""


def _record(saga: SagaExecution) -> dict[str, Any]:
    return {
        "saga_id": saga.saga_id,
        "saga_type": saga.saga_type,
        "status": SagaStatus(saga.status).value,
        "context": saga.context or {},
        "steps": saga.steps or [],
        "compensated": bool(saga.compensated),
        "failed_step": saga.failed_step,
        "error": saga.error,
        "created_at": saga.created_at.isoformat() if saga.created_at else None,
        "updated_at": saga.updated_at.isoformat() if saga.updated_at else None,
    }


class KeyValueSagaStateStore(SagaStateStore):
    """מימוש על KeyValueStore - בלי שאילתות, get_pending סורק לפי prefix"""

    def __init__(self, kv_store: KeyValueStore):
        self.kv_store = kv_store

    @staticmethod
    def _key(saga_id: str) -> str:
        return f"{_KV_PREFIX}:{saga_id}"

    async def create(
        self,
        saga_id: str,
        saga_type: str,
        context: dict[str, Any],
        status: SagaStatus = SagaStatus.RUNNING,
    ) -> bool:
        now = utcnow().isoformat()
        record = {
            "saga_id": saga_id,
            "saga_type": saga_type,
            "status": status.value,
            "context": to_jsonable(context),
            "steps": [],
            "compensated": False,
            "failed_step": None,
            "error": None,
            "created_at": now,
            "updated_at": now,
        }
        return await self.kv_store.add(self._key(saga_id), record, ttl=_KV_TTL_SECONDS)

    async def get(self, saga_id: str) -> dict[str, Any] | None:
        return await self.kv_store.get(self._key(saga_id))

    async def update(self, saga_id: str, **fields: Any) -> None:
        record = await self.get(saga_id)
        if record is None:
            logger.warning("Saga state missing on update", extra_data={"saga_id": saga_id})
            return
        for name, value in fields.items():
            if isinstance(value, SagaStatus):
                value = value.value
            record[name] = to_jsonable(value)
        record["updated_at"] = utcnow().isoformat()
        await self.kv_store.set(self._key(saga_id), record, ttl=_KV_TTL_SECONDS)

    async def get_pending(self, older_than_minutes: int = 5) -> list[dict[str, Any]]:
        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        active = {status.value for status in ACTIVE_STATUSES}
        pending = []
        for key in await self.kv_store.keys(f"{_KV_PREFIX}:"):
            record = await self.kv_store.get(key)
            if not record or record.get("status") not in active:
                continue
            if datetime.fromisoformat(record["updated_at"]) < cutoff:
                pending.append(record)
        return pending


class SqlSagaStateStore(SagaStateStore):
    """מימוש ברירת המחדל - טבלת saga_executions, עם fallback ל-KeyValueStore"""

    def __init__(self, db: AsyncSession, fallback: KeyValueSagaStateStore | None = None):
        self.db = db
        self.fallback = fallback
        self._use_fallback = False

    def _degrade(self, exc: BaseException) -> KeyValueSagaStateStore:
        if not is_missing_table_error(exc) or self.fallback is None:
            raise exc
        if not self._use_fallback:
            logger.warning("saga_executions table missing, using key-value saga state")
        self._use_fallback = True
        return self.fallback

    async def create(
        self,
        saga_id: str,
        saga_type: str,
        context: dict[str, Any],
        status: SagaStatus = SagaStatus.RUNNING,
    ) -> bool:
        if self._use_fallback:
            return await self.fallback.create(saga_id, saga_type, context, status)
        try:
            async with self.db.begin_nested():
                self.db.add(SagaExecution(
                    saga_id=saga_id,
                    saga_type=saga_type,
                    status=status,
                    context=to_jsonable(context),
                    steps=[],
                ))
            await self.db.commit()
        except IntegrityError:
            return False
        except (OperationalError, ProgrammingError) as exc:
            return await self._degrade(exc).create(saga_id, saga_type, context, status)
        return True

    async def _load(self, saga_id: str) -> SagaExecution | None:
        result = await self.db.execute(
            select(SagaExecution)
            .where(SagaExecution.saga_id == saga_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get(self, saga_id: str) -> dict[str, Any] | None:
        if self._use_fallback:
            return await self.fallback.get(saga_id)
        try:
            saga = await self._load(saga_id)
        except (OperationalError, ProgrammingError) as exc:
            await self.db.rollback()
            return await self._degrade(exc).get(saga_id)
        return _record(saga) if saga is not None else None

    async def update(self, saga_id: str, **fields: Any) -> None:
        if self._use_fallback:
            await self.fallback.update(saga_id, **fields)
            return
        saga = await self._load(saga_id)
        if saga is None:
            logger.warning("Saga state missing on update", extra_data={"saga_id": saga_id})
            return
        for name, value in fields.items():
            if name in ("context", "steps"):
                value = to_jsonable(value)
            setattr(saga, name, value)
        saga.updated_at = utcnow()
        await self.db.commit()

    async def get_pending(self, older_than_minutes: int = 5) -> list[dict[str, Any]]:
        if self._use_fallback:
            return await self.fallback.get_pending(older_than_minutes)
        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        try:
            result = await self.db.execute(
                select(SagaExecution)
                .where(
                    SagaExecution.status.in_(ACTIVE_STATUSES),
                    SagaExecution.updated_at < cutoff,
                )
                .order_by(SagaExecution.updated_at)
                .limit(100)
            )
        except (OperationalError, ProgrammingError) as exc:
            await self.db.rollback()
            return await self._degrade(exc).get_pending(older_than_minutes)
        return [_record(saga) for saga in result.scalars().all()]
