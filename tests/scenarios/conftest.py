"""
Fixtures ו-helpers לבדיקות תרחיש מקצה לקצה.

מספק:
- שליחת webhook חתום של WhatsApp דרך ה-API
- סבב worker שמריץ כל job ממתין, כולל retries שעוד לא הגיע זמנם
- headers לנקודות ה-admin
"""
import json
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import select, update

from app.db.database import utcnow
from app.db.models.job import Job, JobStatus

ADMIN_API_KEY = "test-admin-key"


# ============================================================================
# WhatsApp webhook
# ============================================================================

@pytest.fixture
def post_whatsapp(test_client, whatsapp_headers):
    """שליחת payload חתום ל-/api/webhooks/whatsapp"""
    async def _post(payload: dict[str, Any]):
        body = json.dumps(payload).encode("utf-8")
        return await test_client.post("/api/webhooks/whatsapp", content=body, headers=whatsapp_headers(body))

    return _post


# ============================================================================
# Worker
# ============================================================================

@pytest.fixture
def make_due(db_session):
    """הקדמת run_after של כל ה-jobs הממתינים - במקום להמתין ל-backoff"""
    async def _make_due() -> None:
        await db_session.execute(
            update(Job)
            .where(Job.status == JobStatus.PENDING)
            .values(run_after=utcnow() - timedelta(seconds=1))
        )
        await db_session.commit()

    return _make_due


@pytest.fixture
def run_worker(services, make_due):
    """
    סבב אחד של ה-worker: כל מה שממתין נעשה due ומורץ.

    Returns:
        סיכום run_due_jobs של הסבב
    """
    async def _run() -> dict[str, int]:
        await make_due()
        return await services.runner.run_due_jobs("scenario-worker")

    return _run


@pytest.fixture
def jobs_by_status(db_session):
    async def _jobs(status: JobStatus) -> list[Job]:
        result = await db_session.execute(
            select(Job)
            .where(Job.status == status)
            .order_by(Job.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    return _jobs


# ============================================================================
# Admin
# ============================================================================

@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": ADMIN_API_KEY}
