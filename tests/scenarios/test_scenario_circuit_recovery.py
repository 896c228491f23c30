"""
תרחיש 5 - WhatsApp API נופל ומתאושש

מכסה:
- כשלונות רצופים פותחים את ה-circuit; ה-snapshot נשמר ל-workers האחרים
- בזמן שה-circuit פתוח jobs נדחים בלי לספור ניסיון
- אחרי ה-cooldown ניסיון אחד (half-open) מצליח וסוגר את ה-circuit
- מפעיל סוגר את ה-circuit ידנית דרך ה-admin API
"""
import time

import pytest

from app.core.exceptions import WhatsAppError
from app.db.models.job import JobStatus
from app.domain.processors.order_notification import HOOK_NAME as NOTIFICATION_HOOK

CIRCUIT_KEY = "circuit:whatsapp_api"


@pytest.fixture
def notify(services, order_factory):
    async def _notify():
        order = await order_factory()
        return await services.dispatcher.dispatch(
            NOTIFICATION_HOOK,
            {"order_id": order.id, "type": "order_confirmation"},
            max_attempts=5,
        )
    return _notify


@pytest.fixture
def breaker(services):
    services.whatsapp_breaker.config.failure_threshold = 2
    return services.whatsapp_breaker


@pytest.mark.scenario
class TestWhatsAppOutage:

    async def test_outage_defers_then_half_open_trial_recovers(
        self, notify, breaker, fake_whatsapp, run_worker, jobs_by_status, kv_store, event_bus
    ):
        fake_whatsapp.fail_with = WhatsAppError("messages returned status 503")
        await notify()
        await notify()

        assert await run_worker() == {"retry": 2}
        assert breaker.is_open
        snapshot = await kv_store.get(CIRCUIT_KEY)
        assert snapshot["state"] == "open"

        await notify()
        assert await run_worker() == {"deferred": 3}
        attempts = sorted(job.attempt_count for job in await jobs_by_status(JobStatus.PENDING))
        # דחייה בגלל circuit פתוח לא נספרת כניסיון
        assert attempts == [0, 1, 1]
        assert fake_whatsapp.sent == []

        # ה-API חזר וה-cooldown עבר
        fake_whatsapp.fail_with = None
        await kv_store.set(CIRCUIT_KEY, {**snapshot, "opened_at": time.time() - 3600})

        assert await run_worker() == {"done": 3}
        assert breaker.is_closed
        assert (await kv_store.get(CIRCUIT_KEY))["state"] == "closed"
        assert len(fake_whatsapp.sent) == 3
        assert event_bus.names().count("notification.sent") == 3

    async def test_failed_half_open_trial_reopens(
        self, notify, breaker, fake_whatsapp, run_worker, kv_store
    ):
        fake_whatsapp.fail_with = WhatsAppError("messages returned status 503")
        await notify()
        await notify()
        await run_worker()
        snapshot = await kv_store.get(CIRCUIT_KEY)
        await kv_store.set(CIRCUIT_KEY, {**snapshot, "opened_at": time.time() - 3600})

        # ה-job הראשון הוא ניסיון ה-half-open ונכשל; השני נדחה
        assert await run_worker() == {"retry": 1, "deferred": 1}
        assert breaker.is_open
        assert breaker.get_retry_after() > 0

    async def test_operator_closes_circuit(
        self, notify, breaker, fake_whatsapp, run_worker, test_client, admin_headers, kv_store
    ):
        fake_whatsapp.fail_with = WhatsAppError("messages returned status 503")
        await notify()
        await notify()
        await run_worker()

        status = await test_client.get("/api/admin/circuit-breakers", headers=admin_headers)
        by_service = {item["service"]: item for item in status.json()}
        assert by_service["whatsapp_api"]["state"] == "open"
        assert "503" in by_service["whatsapp_api"]["last_failure_reason"]

        fake_whatsapp.fail_with = None
        closed = await test_client.post("/api/admin/circuit-breakers/whatsapp_api/close", headers=admin_headers)
        assert closed.json()["state"] == "closed"
        assert await kv_store.get(CIRCUIT_KEY) is None

        assert await run_worker() == {"done": 2}
