"""
Idempotency Service - claim / complete / release ledger.

ה-claim הוא INSERT יחיד בתוך savepoint מול אילוץ ייחודי (key, scope):
- INSERT הצליח → CLAIMED (רק קורא אחד יכול לזכות)
- IntegrityError → קריאת הרשומה הקיימת: completed → ALREADY_PROCESSED,
  claimed → ALREADY_PROCESSING

כך נסגר מרוץ check-then-act בין שתי מסירות מקבילות של אותו אירוע.

כשהטבלה חסרה (מיגרציה שלא רצה) השירות עובר ל-KeyValueStore עם SET-NX + TTL.
הערבות חלשה יותר: תלויה בעמידות ה-store (in-memory לא שורד restart ולא
משותף בין workers).
"""
from __future__ import annotations

import enum
import hashlib
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.event_bus import Publisher
from app.core.key_value_store import KeyValueStore
from app.core.logging import get_logger
from app.db.database import is_missing_table_error, utcnow
from app.db.models.idempotency_claim import ClaimStatus, IdempotencyClaim, IdempotencyScope

logger = get_logger(__name__)

_FALLBACK_PREFIX = "idem"


class ClaimResult(str, enum.Enum):
    CLAIMED = "claimed"
    ALREADY_PROCESSING = "already_processing"
    ALREADY_PROCESSED = "already_processed"

    @property
    def is_claimed(self) -> bool:
        return self is ClaimResult.CLAIMED


def generate_key(*parts: Any) -> str:
    """מפתח idempotency דטרמיניסטי מחלקים: sha256 של החלקים מחוברים ב-':'"""
    joined = ":".join("" if p is None else str(p) for p in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


class IdempotencyService:
    """Durable claim ledger keyed by (idempotency key, scope)"""

    def __init__(
        self,
        db: AsyncSession,
        kv_store: KeyValueStore,
        event_bus: Publisher | None = None,
        ttl_hours: int | None = None,
    ):
        self.db = db
        self.kv_store = kv_store
        self.event_bus = event_bus
        self.ttl = timedelta(hours=ttl_hours or settings.IDEMPOTENCY_TTL_HOURS)

    generate_key = staticmethod(generate_key)

    # ── claim ──

    async def claim(
        self,
        key: str,
        scope: IdempotencyScope,
        *,
        owner_token: str | None = None,
        stale_after_seconds: int | None = None,
    ) -> ClaimResult:
        """
        ניסיון אטומי לתפוס אירוע לעיבוד.

        Args:
            key: מפתח idempotency
            scope: תחום (webhook / notification / payment ...)
            owner_token: מזהה בעלים. claim חוזר עם אותו token על רשומה ב-claimed
                מחזיר CLAIMED (ה-gate תופס בשם ה-job שיעבד את האירוע).
            stale_after_seconds: claim ב-claimed ישן מזה נלקח מחדש (עיבוד שקרס).
        """
        now = utcnow()
        try:
            async with self.db.begin_nested():
                self.db.add(IdempotencyClaim(
                    idempotency_key=key,
                    scope=scope,
                    status=ClaimStatus.CLAIMED,
                    owner_token=owner_token,
                    claimed_at=now,
                    expires_at=now + self.ttl,
                ))
            await self.db.commit()
            await self._emit("idempotency.claimed", key, scope)
            return ClaimResult.CLAIMED
        except IntegrityError:
            pass  # כבר קיים - בדיקת מצב
        except (OperationalError, ProgrammingError) as exc:
            if not is_missing_table_error(exc):
                raise
            return await self._fallback_claim(key, scope, owner_token)

        result = await self.db.execute(
            select(
                IdempotencyClaim.id,
                IdempotencyClaim.status,
                IdempotencyClaim.owner_token,
                IdempotencyClaim.claimed_at,
            ).where(
                IdempotencyClaim.idempotency_key == key,
                IdempotencyClaim.scope == scope,
            )
        )
        row = result.one_or_none()
        if row is None:
            # שוחרר בין ה-INSERT לקריאה - מי ששחרר יעשה retry, לא אנחנו
            return ClaimResult.ALREADY_PROCESSING

        if row.status == ClaimStatus.COMPLETED:
            logger.info(
                "Skipping completed duplicate",
                extra_data={"key": key, "scope": scope.value},
            )
            return ClaimResult.ALREADY_PROCESSED

        if owner_token and row.owner_token == owner_token:
            return ClaimResult.CLAIMED

        if stale_after_seconds is not None:
            threshold = now - timedelta(seconds=stale_after_seconds)
            if row.claimed_at is not None and row.claimed_at <= threshold:
                # UPDATE מותנה - רק מי שראה את אותו claimed_at זוכה
                takeover = await self.db.execute(
                    update(IdempotencyClaim)
                    .where(
                        IdempotencyClaim.id == row.id,
                        IdempotencyClaim.status == ClaimStatus.CLAIMED,
                        IdempotencyClaim.claimed_at == row.claimed_at,
                    )
                    .values(claimed_at=now, owner_token=owner_token, expires_at=now + self.ttl)
                )
                await self.db.commit()
                if takeover.rowcount == 1:
                    logger.warning(
                        "Reclaimed stale processing claim",
                        extra_data={
                            "key": key,
                            "scope": scope.value,
                            "stale_after_seconds": stale_after_seconds,
                        },
                    )
                    return ClaimResult.CLAIMED

        return ClaimResult.ALREADY_PROCESSING

    async def claim_with_parts(
        self,
        scope: IdempotencyScope,
        *parts: Any,
        owner_token: str | None = None,
    ) -> tuple[ClaimResult, str]:
        """claim עם מפתח שנגזר מחלקים - מחזיר גם את המפתח לשימוש ב-complete/release"""
        key = generate_key(*parts)
        return await self.claim(key, scope, owner_token=owner_token), key

    # ── complete / release ──

    async def complete(self, key: str, scope: IdempotencyScope) -> bool:
        """סימון claim כ-completed. מחזיר False אם לא נמצא claim פתוח."""
        now = utcnow()
        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    update(IdempotencyClaim)
                    .where(
                        IdempotencyClaim.idempotency_key == key,
                        IdempotencyClaim.scope == scope,
                        IdempotencyClaim.status == ClaimStatus.CLAIMED,
                    )
                    .values(
                        status=ClaimStatus.COMPLETED,
                        completed_at=now,
                        expires_at=now + self.ttl,
                    )
                )
            await self.db.commit()
        except (OperationalError, ProgrammingError) as exc:
            if not is_missing_table_error(exc):
                raise
            return await self._fallback_complete(key, scope)

        if result.rowcount == 0:
            logger.warning(
                "Complete called without an open claim",
                extra_data={"key": key, "scope": scope.value},
            )
            return False
        await self._emit("idempotency.completed", key, scope)
        return True

    async def release(self, key: str, scope: IdempotencyScope) -> bool:
        """
        מחיקת claim פתוח - מאפשר ל-retry מאוחר לתפוס מחדש.

        claim שכבר הושלם לא נמחק.
        """
        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    delete(IdempotencyClaim).where(
                        IdempotencyClaim.idempotency_key == key,
                        IdempotencyClaim.scope == scope,
                        IdempotencyClaim.status == ClaimStatus.CLAIMED,
                    )
                )
            await self.db.commit()
        except (OperationalError, ProgrammingError) as exc:
            if not is_missing_table_error(exc):
                raise
            return await self._fallback_release(key, scope)
        return result.rowcount > 0

    async def is_processed(self, key: str, scope: IdempotencyScope) -> bool:
        try:
            result = await self.db.execute(
                select(IdempotencyClaim.status).where(
                    IdempotencyClaim.idempotency_key == key,
                    IdempotencyClaim.scope == scope,
                )
            )
        except (OperationalError, ProgrammingError) as exc:
            if not is_missing_table_error(exc):
                raise
            await self.db.rollback()
            value = await self.kv_store.get(self._fallback_key(key, scope))
            return bool(value) and value.get("status") == ClaimStatus.COMPLETED.value
        return result.scalar_one_or_none() == ClaimStatus.COMPLETED

    # ── תחזוקה ──

    async def extend_expiry(self, key: str, scope: IdempotencyScope, seconds: int) -> bool:
        result = await self.db.execute(
            update(IdempotencyClaim)
            .where(
                IdempotencyClaim.idempotency_key == key,
                IdempotencyClaim.scope == scope,
            )
            .values(expires_at=utcnow() + timedelta(seconds=seconds))
        )
        await self.db.commit()
        return result.rowcount > 0

    async def release_by_scope(self, scope: IdempotencyScope) -> int:
        """שחרור כל ה-claims הפתוחים בתחום (למשל אחרי תקלה רוחבית)"""
        result = await self.db.execute(
            delete(IdempotencyClaim).where(
                IdempotencyClaim.scope == scope,
                IdempotencyClaim.status == ClaimStatus.CLAIMED,
            )
        )
        await self.db.commit()
        logger.info(
            "Released claims by scope",
            extra_data={"scope": scope.value, "released": result.rowcount},
        )
        return result.rowcount

    async def cleanup(self) -> int:
        """מחיקת claims שהושלמו ופג תוקפם. claim פתוח לא נמחק לעולם"""
        result = await self.db.execute(
            delete(IdempotencyClaim).where(
                IdempotencyClaim.status == ClaimStatus.COMPLETED,
                IdempotencyClaim.expires_at.is_not(None),
                IdempotencyClaim.expires_at < utcnow(),
            )
        )
        await self.db.commit()
        return result.rowcount

    async def get_stats(self) -> dict[str, Any]:
        result = await self.db.execute(
            select(IdempotencyClaim.scope, IdempotencyClaim.status, func.count())
            .group_by(IdempotencyClaim.scope, IdempotencyClaim.status)
        )
        by_scope: dict[str, dict[str, int]] = {}
        total = 0
        for scope, status, count in result.all():
            by_scope.setdefault(scope.value, {})[status.value] = count
            total += count

        expired = await self.db.execute(
            select(func.count()).select_from(IdempotencyClaim).where(
                IdempotencyClaim.expires_at < utcnow()
            )
        )
        return {"total": total, "expired": expired.scalar_one(), "by_scope": by_scope}

    # ── fallback ל-KeyValueStore ──

    @staticmethod
    def _fallback_key(key: str, scope: IdempotencyScope) -> str:
        return f"{_FALLBACK_PREFIX}:{scope.value}:{key}"

    def _ttl_seconds(self) -> int:
        return int(self.ttl.total_seconds())

    async def _fallback_claim(
        self, key: str, scope: IdempotencyScope, owner_token: str | None
    ) -> ClaimResult:
        logger.warning(
            "idempotency_claims table missing, using key-value fallback",
            extra_data={"scope": scope.value},
        )
        fallback_key = self._fallback_key(key, scope)
        stored = await self.kv_store.add(
            fallback_key,
            {"status": ClaimStatus.CLAIMED.value, "owner": owner_token},
            ttl=self._ttl_seconds(),
        )
        if stored:
            return ClaimResult.CLAIMED

        existing = await self.kv_store.get(fallback_key) or {}
        if existing.get("status") == ClaimStatus.COMPLETED.value:
            return ClaimResult.ALREADY_PROCESSED
        if owner_token and existing.get("owner") == owner_token:
            return ClaimResult.CLAIMED
        return ClaimResult.ALREADY_PROCESSING

    async def _fallback_complete(self, key: str, scope: IdempotencyScope) -> bool:
        await self.kv_store.set(
            self._fallback_key(key, scope),
            {"status": ClaimStatus.COMPLETED.value},
            ttl=self._ttl_seconds(),
        )
        return True

    async def _fallback_release(self, key: str, scope: IdempotencyScope) -> bool:
        fallback_key = self._fallback_key(key, scope)
        existing = await self.kv_store.get(fallback_key)
        if not existing or existing.get("status") != ClaimStatus.CLAIMED.value:
            return False
        return await self.kv_store.delete(fallback_key)

    async def _emit(self, event: str, key: str, scope: IdempotencyScope) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event, {"key": key, "scope": scope.value})
