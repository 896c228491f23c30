"""
Tests for the priority retry queue
"""
from datetime import timedelta

import pytest
from hypothesis import HealthCheck, given, settings as hypothesis_settings, strategies as st
from sqlalchemy import update

from app.core.config import settings
from app.db.database import utcnow
from app.db.models.job import Job, JobStatus
from app.domain.services.idempotency_service import IdempotencyService
from app.domain.services.job_dispatcher import JobDispatcher
from app.domain.services.priority_queue import (
    PRIORITY_RATE_LIMITS,
    DirectDispatchLifecycle,
    JobPriority,
    PriorityQueue,
    calculate_backoff_seconds,
    coerce_priority,
    detached_job,
    hash_args,
    unwrap_payload,
    wrap_payload,
)


class RecordingSender:
    """תחליף ל-celery send_task"""

    def __init__(self) -> None:
        self.calls: list[tuple[str, list, int]] = []

    def __call__(self, task_name: str, args: list, countdown: int) -> None:
        self.calls.append((task_name, args, countdown))


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def queue(db_session, kv_store, event_bus, sender) -> PriorityQueue:
    idempotency = IdempotencyService(db_session, kv_store, event_bus)
    return PriorityQueue(db_session, kv_store, idempotency, event_bus, task_sender=sender)


class TestPriorities:

    @pytest.mark.unit
    def test_groups_and_limits(self):
        assert JobPriority.CRITICAL.group == "wch-critical"
        assert JobPriority.MAINTENANCE.group == "wch-maintenance"
        assert PRIORITY_RATE_LIMITS[JobPriority.CRITICAL] == 1000
        assert PRIORITY_RATE_LIMITS[JobPriority.URGENT] == 100
        assert PRIORITY_RATE_LIMITS[JobPriority.NORMAL] == 50
        assert PRIORITY_RATE_LIMITS[JobPriority.BULK] == 20
        assert PRIORITY_RATE_LIMITS[JobPriority.MAINTENANCE] == 10

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "value, expected",
        [(0, JobPriority.CRITICAL), (1, JobPriority.CRITICAL), (4, JobPriority.BULK),
         (9, JobPriority.MAINTENANCE), ("2", JobPriority.URGENT), (None, JobPriority.NORMAL),
         ("high", JobPriority.NORMAL)],
    )
    def test_coerce_priority(self, value, expected):
        assert coerce_priority(value) == expected


class TestBackoff:

    @pytest.mark.unit
    def test_doubles_from_base(self):
        assert calculate_backoff_seconds(0, base_seconds=30, max_backoff_seconds=3600) == 30
        assert calculate_backoff_seconds(1, base_seconds=30, max_backoff_seconds=3600) == 60
        assert calculate_backoff_seconds(2, base_seconds=30, max_backoff_seconds=3600) == 120

    @pytest.mark.unit
    def test_capped(self):
        assert calculate_backoff_seconds(7, base_seconds=30, max_backoff_seconds=3600) == 3600
        assert calculate_backoff_seconds(10_000, base_seconds=30, max_backoff_seconds=3600) == 3600

    @pytest.mark.unit
    def test_degenerate_inputs(self):
        assert calculate_backoff_seconds(-3, base_seconds=30, max_backoff_seconds=3600) == 30
        assert calculate_backoff_seconds(2, base_seconds=0, max_backoff_seconds=3600) == 0
        assert calculate_backoff_seconds(2, base_seconds=5000, max_backoff_seconds=3600) == 3600

    @pytest.mark.unit
    @hypothesis_settings(
        max_examples=200,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    @given(
        retry=st.integers(min_value=0, max_value=200),
        base=st.integers(min_value=1, max_value=600),
        cap=st.integers(min_value=1, max_value=86400),
    )
    def test_matches_closed_form(self, retry, base, cap):
        """תמיד min(base * 2**retry, cap)"""
        assert calculate_backoff_seconds(
            retry, base_seconds=base, max_backoff_seconds=cap
        ) == min(base * 2 ** retry, cap)


class TestPayloadEnvelope:

    @pytest.mark.unit
    def test_wrap_unwrap(self):
        payload = wrap_payload({"order_id": 1}, JobPriority.URGENT, claim_token="tok", scheduled_at=100)

        assert payload["_version"] == 2
        assert payload["_meta"] == {
            "priority": 2,
            "scheduled_at": 100,
            "attempt": 1,
            "last_retry": None,
            "claim_token": "tok",
        }
        args, meta = unwrap_payload(payload)
        assert args == {"order_id": 1}
        assert meta["claim_token"] == "tok"

    @pytest.mark.unit
    def test_legacy_payload(self):
        args, meta = unwrap_payload({"order_id": 1, "type": "status_update"})
        assert args == {"order_id": 1, "type": "status_update"}
        assert meta == {"priority": 3, "attempt": 1, "legacy": True}

    @pytest.mark.unit
    def test_hash_ignores_key_order(self):
        assert hash_args({"a": 1, "b": 2}) == hash_args({"b": 2, "a": 1})

    @pytest.mark.unit
    def test_detached_job(self):
        payload = wrap_payload({"message_id": "m"}, JobPriority.CRITICAL, attempt=3)
        job = detached_job("wch_process_webhook_message", payload)
        assert job.id is None
        assert job.attempt_count == 2
        assert job.priority == 1
        assert job.status == JobStatus.RUNNING


class TestSchedule:

    @pytest.mark.integration
    async def test_schedule_creates_pending_job(self, queue):
        job = await queue.schedule("hook", {"x": 1}, JobPriority.URGENT, delay_seconds=0, max_attempts=5)

        assert job.id is not None
        assert job.status == JobStatus.PENDING
        assert job.attempt_count == 0
        assert job.max_attempts == 5
        assert job.priority == 2
        assert job.payload_hash == hash_args({"x": 1})
        assert await queue.is_scheduled("hook", {"x": 1})
        assert not await queue.is_scheduled("hook", {"x": 2})

    @pytest.mark.integration
    async def test_default_max_attempts(self, queue):
        job = await queue.schedule("hook", {})
        assert job.max_attempts == settings.QUEUE_DEFAULT_MAX_ATTEMPTS

    @pytest.mark.integration
    async def test_dispatcher_delegates(self, queue):
        dispatcher = JobDispatcher(queue)
        job = await dispatcher.dispatch("hook", {"order_id": 9}, priority=JobPriority.BULK, claim_token="t")

        assert job.priority == 4
        assert job.payload["_meta"]["claim_token"] == "t"
        assert await dispatcher.is_scheduled("hook", {"order_id": 9})

    @pytest.mark.integration
    async def test_cancel_only_pending(self, queue, db_session):
        await queue.schedule("hook", {"x": 1})
        await queue.schedule("hook", {"x": 1})

        assert await queue.cancel("hook", {"x": 1}) == 2
        assert not await queue.is_scheduled("hook", {"x": 1})


class TestClaimDueJobs:

    @pytest.mark.integration
    async def test_ordered_by_priority_then_run_after(self, queue):
        bulk = await queue.schedule("hook", {"n": "bulk"}, JobPriority.BULK)
        critical = await queue.schedule("hook", {"n": "critical"}, JobPriority.CRITICAL)
        normal = await queue.schedule("hook", {"n": "normal"}, JobPriority.NORMAL)
        await queue.schedule("hook", {"n": "later"}, JobPriority.CRITICAL, delay_seconds=3600)

        jobs = await queue.claim_due_jobs("worker-1", limit=10)

        assert [j.id for j in jobs] == [critical.id, normal.id, bulk.id]
        assert all(j.status == JobStatus.RUNNING and j.locked_by == "worker-1" for j in jobs)

    @pytest.mark.integration
    async def test_second_worker_gets_nothing(self, queue):
        await queue.schedule("hook", {"n": 1})

        first = await queue.claim_due_jobs("worker-1")
        second = await queue.claim_due_jobs("worker-2")

        assert len(first) == 1
        assert second == []

    @pytest.mark.integration
    async def test_claim_job_conditional(self, queue):
        job = await queue.schedule("hook", {"n": 1})

        assert (await queue.claim_job(job.id, "w1")).status == JobStatus.RUNNING
        assert await queue.claim_job(job.id, "w2") is None

    @pytest.mark.integration
    async def test_rate_limit_defers_jobs(self, queue, kv_store):
        for i in range(PRIORITY_RATE_LIMITS[JobPriority.MAINTENANCE] + 2):
            await queue.schedule("hook", {"n": i}, JobPriority.MAINTENANCE)

        jobs = await queue.claim_due_jobs("w1", limit=50)

        assert len(jobs) == PRIORITY_RATE_LIMITS[JobPriority.MAINTENANCE]

    @pytest.mark.integration
    async def test_rate_limit_can_be_ignored(self, queue):
        for i in range(12):
            await queue.schedule("hook", {"n": i}, JobPriority.MAINTENANCE)

        jobs = await queue.claim_due_jobs("w1", limit=50, respect_rate_limits=False)

        assert len(jobs) == 12


class TestRetries:

    @pytest.mark.integration
    async def test_schedule_retry_backoff_and_attempt(self, queue, event_bus):
        job = await queue.schedule("hook", {"n": 1})
        [job] = await queue.claim_due_jobs("w1")
        before = utcnow()

        assert await queue.schedule_retry(job, RuntimeError("timeout")) is True

        assert job.status == JobStatus.PENDING
        assert job.attempt_count == 1
        assert job.locked_by is None
        assert job.last_error == "timeout"
        assert job.payload["_meta"]["attempt"] == 2
        delay = (job.run_after - before).total_seconds()
        assert settings.QUEUE_RETRY_BASE_SECONDS - 2 <= delay <= settings.QUEUE_RETRY_BASE_SECONDS + 2
        assert "job.retry_scheduled" in event_bus.names()

    @pytest.mark.integration
    async def test_schedule_retry_is_idempotent_per_attempt(self, queue, db_session):
        job = await queue.schedule("hook", {"n": 1})
        assert await queue.schedule_retry(job, "first report") is True

        # worker שני מדווח על אותו כשלון (אותו attempt) - לא נספר פעמיים
        job.attempt_count = 0
        assert await queue.schedule_retry(job, "second report") is False

    @pytest.mark.integration
    async def test_reschedule_without_penalty(self, queue):
        job = await queue.schedule("hook", {"n": 1})
        [job] = await queue.claim_due_jobs("w1")

        await queue.reschedule_without_penalty(job, 60)

        assert job.status == JobStatus.PENDING
        assert job.attempt_count == 0
        assert job.run_after > utcnow() + timedelta(seconds=50)

    @pytest.mark.integration
    async def test_mark_done_and_dead(self, queue):
        done = await queue.schedule("hook", {"n": 1})
        dead = await queue.schedule("hook", {"n": 2})

        await queue.mark_done(done)
        await queue.mark_dead(dead, ValueError("bad payload"))

        assert done.status == JobStatus.DONE
        assert dead.status == JobStatus.DEAD
        assert dead.last_error == "bad payload"
        assert not await queue.is_scheduled("hook", {"n": 1})


class TestMaintenanceAndStats:

    @pytest.mark.integration
    async def test_recover_stuck_jobs(self, queue, db_session):
        job = await queue.schedule("hook", {"n": 1})
        await queue.claim_due_jobs("w1")
        await db_session.execute(
            update(Job).where(Job.id == job.id).values(locked_at=utcnow() - timedelta(hours=1))
        )
        await db_session.commit()

        assert await queue.recover_stuck_jobs(600) == 1
        await db_session.refresh(job)
        assert job.status == JobStatus.PENDING
        assert job.locked_by is None

    @pytest.mark.integration
    async def test_cleanup_old_jobs(self, queue, db_session):
        old = await queue.schedule("hook", {"n": 1})
        await queue.mark_done(old)
        await db_session.execute(
            update(Job).where(Job.id == old.id).values(updated_at=utcnow() - timedelta(days=30))
        )
        await db_session.commit()
        await queue.schedule("hook", {"n": 2})

        assert await queue.cleanup_old_jobs(7) == 1

    @pytest.mark.integration
    async def test_get_stats(self, queue):
        await queue.schedule("hook", {"n": 1}, JobPriority.CRITICAL)
        await queue.schedule("hook", {"n": 2}, JobPriority.BULK)
        done = await queue.schedule("hook", {"n": 3})
        await queue.mark_done(done)

        stats = await queue.get_stats()

        assert stats["by_status"] == {"pending": 2, "done": 1}
        assert stats["pending_by_group"] == {"wch-critical": 1, "wch-bulk": 1}
        assert stats["oldest_pending_seconds"] is not None


class TestCeleryFallback:
    """טבלת jobs חסרה - שליחה ישירה ל-Celery עם סימון ב-KeyValueStore"""

    @pytest.fixture
    async def without_jobs_table(self, async_engine):
        async with async_engine.begin() as conn:
            await conn.run_sync(Job.__table__.drop)

    @pytest.mark.integration
    async def test_schedule_falls_back(self, without_jobs_table, queue, sender):
        job = await queue.schedule("hook", {"n": 1}, JobPriority.URGENT, delay_seconds=10)

        assert job is None
        [(task_name, args, countdown)] = sender.calls
        assert task_name == "app.workers.tasks.send_dispatched_job"
        assert args[0] == "hook"
        assert args[1]["args"] == {"n": 1}
        assert countdown == 10
        assert await queue.is_scheduled("hook", {"n": 1})
        assert await queue.claim_due_jobs("w1") == []

    @pytest.mark.integration
    async def test_direct_lifecycle_retry_and_done(self, without_jobs_table, queue, sender):
        lifecycle = DirectDispatchLifecycle(queue)
        job = detached_job("hook", wrap_payload({"n": 1}))

        assert await lifecycle.schedule_retry(job, "boom") is True
        assert job.attempt_count == 1
        assert sender.calls[-1][2] == settings.QUEUE_RETRY_BASE_SECONDS
        assert sender.calls[-1][1][1]["_meta"]["attempt"] == 2

        await lifecycle.mark_done(job)
        assert not await queue.is_scheduled("hook", {"n": 1})
