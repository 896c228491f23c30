"""
Tests for the concrete queue processors:
inbound messages, delivery statuses, webhook errors, order notifications
"""
from datetime import datetime, time as dt_time, timezone
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy import select

from app.core.config import settings
from app.core.exceptions import WhatsAppError
from app.db.models.conversation import Conversation, Message
from app.db.models.customer_preference import CustomerPreference
from app.db.models.dead_letter_entry import DeadLetterReason
from app.db.models.idempotency_claim import IdempotencyScope
from app.db.models.job import JobStatus
from app.db.models.notification_log import NotificationLog
from app.db.models.order import OrderStatus
from app.domain.processors import ProcessingOutcome
from app.domain.processors.delivery_status import HOOK_NAME as STATUS_HOOK, should_apply
from app.domain.processors.inbound_message import HOOK_NAME as MESSAGE_HOOK, extract_text
from app.domain.processors.order_notification import (
    DEFAULT_ESTIMATED_DELIVERY,
    HOOK_NAME as NOTIFICATION_HOOK,
    OrderNotificationProcessor,
    format_carrier_name,
    is_quiet_hours,
    template_for,
    tracking_url,
)
from app.domain.processors.webhook_error import (
    HOOK_NAME as ERROR_HOOK,
    RATE_LIMIT_KEY,
    categorize_error,
)
from app.domain.services.idempotency_service import generate_key
from app.domain.services.priority_queue import JobPriority


@pytest.fixture
def run(services):
    """תזמון job, תפיסה והרצה דרך ה-processor הרשום"""
    async def _run(hook: str, args: dict, **schedule_kwargs):
        job = await services.queue.schedule(hook, args, **schedule_kwargs)
        job = await services.queue.claim_job(job.id, "worker-1")
        outcome = await services.registry.get(hook).execute(job)
        return outcome, job
    return _run


@pytest.fixture
def outbound_message(db_session):
    """הודעה יוצאת ששמורה עם סטטוס"""
    async def _create(wa_message_id: str = "wamid.out.1", status: str = "sent", rank: int = 2) -> Message:
        conversation = Conversation(customer_phone="+972501234567", state="idle", context={})
        db_session.add(conversation)
        await db_session.flush()
        message = Message(
            conversation_id=conversation.id,
            wa_message_id=wa_message_id,
            direction="outbound",
            message_type="template",
            content={},
            status=status,
            status_rank=rank,
        )
        db_session.add(message)
        await db_session.commit()
        return message
    return _create


def inbound_args(message_id: str = "wamid.in.1", text: str = "hi", sender: str = "972501234567") -> dict:
    message = {"id": message_id, "from": sender, "type": "text", "text": {"body": text}}
    return {"message_id": message_id, "from": sender, "type": "text", "message": message}


# ============================================================================
# Inbound messages
# ============================================================================


class TestExtractText:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "message, expected",
        [
            ({"type": "text", "text": {"body": "hello"}}, ("hello", None)),
            ({"type": "button", "button": {"text": "Checkout", "payload": "checkout:1"}}, ("Checkout", "checkout:1")),
            (
                {"type": "interactive", "interactive": {"button_reply": {"id": "add:7", "title": "Add"}}},
                ("Add", "add:7"),
            ),
            (
                {"type": "interactive", "interactive": {"list_reply": {"id": "category:3", "title": "Shoes"}}},
                ("Shoes", "category:3"),
            ),
            ({"type": "location", "location": {"name": "Home"}}, ("Home", None)),
            ({"type": "location", "location": {"latitude": 32.1, "longitude": 34.8}}, ("32.1,34.8", None)),
            ({"type": "image", "image": {"caption": "this one"}}, ("this one", None)),
            ({"type": "reaction"}, ("", None)),
        ],
    )
    def test_by_message_type(self, message, expected):
        assert extract_text(message) == expected


class TestInboundMessageProcessor:

    @pytest.mark.integration
    async def test_greeting_starts_browsing(self, run, db_session, event_bus):
        outcome, job = await run(MESSAGE_HOOK, inbound_args(text="Hello there"))

        assert outcome == ProcessingOutcome.DONE
        conversation = (await db_session.execute(
            select(Conversation).where(Conversation.customer_phone == "+972501234567")
        )).scalar_one()
        assert conversation.state == "browsing"
        assert conversation.context["last_intent"] == "GREETING"

        stored = (await db_session.execute(select(Message))).scalar_one()
        assert stored.wa_message_id == "wamid.in.1"
        assert stored.direction == "inbound"
        assert stored.intent == "GREETING"
        assert stored.content["text"] == "Hello there"

        [(_, data)] = [e for e in event_bus.emitted if e[0] == "conversation.event"]
        assert data["event"] == "start"
        assert data["to_state"] == "browsing"

    @pytest.mark.integration
    async def test_button_reply_drives_transition(self, run, db_session):
        await run(MESSAGE_HOOK, inbound_args("wamid.in.1", text="hi"))
        message = {
            "id": "wamid.in.2",
            "from": "972501234567",
            "type": "interactive",
            "interactive": {"list_reply": {"id": "category:shoes", "title": "Shoes"}},
        }

        outcome, _ = await run(MESSAGE_HOOK, {"message_id": "wamid.in.2", "from": "972501234567", "message": message})

        assert outcome == ProcessingOutcome.DONE
        conversation = (await db_session.execute(select(Conversation))).scalar_one()
        assert conversation.state == "browsing"
        assert conversation.context["entities"] == {"id": "shoes"}

    @pytest.mark.integration
    async def test_unknown_intent_keeps_state(self, run, db_session, event_bus):
        outcome, _ = await run(MESSAGE_HOOK, inbound_args(text="qwerty zxcv"))

        assert outcome == ProcessingOutcome.DONE
        conversation = (await db_session.execute(select(Conversation))).scalar_one()
        assert conversation.state == "idle"
        assert "conversation.event" not in event_bus.names()

    @pytest.mark.integration
    async def test_same_message_processed_once(self, run, db_session):
        first, _ = await run(MESSAGE_HOOK, inbound_args())
        second, job = await run(MESSAGE_HOOK, inbound_args())

        assert first == ProcessingOutcome.DONE
        assert second == ProcessingOutcome.SKIPPED
        assert job.status == JobStatus.DONE
        assert len((await db_session.execute(select(Message))).scalars().all()) == 1

    @pytest.mark.integration
    async def test_missing_sender_is_dead_lettered(self, run, services):
        outcome, _ = await run(MESSAGE_HOOK, {"message_id": "wamid.in.9", "text": "hi"})

        assert outcome == ProcessingOutcome.DEAD
        [entry] = await services.dead_letters.get_pending()
        assert entry.reason == DeadLetterReason.VALIDATION_FAILED


# ============================================================================
# Delivery statuses
# ============================================================================


class TestDeliveryStatusProcessor:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current, rank, new, expected",
        [
            ("sent", 2, "delivered", True),
            ("delivered", 3, "read", True),
            ("read", 4, "delivered", False),
            ("delivered", 3, "delivered", False),
            ("read", 4, "failed", True),
            ("failed", 0, "delivered", False),
            (None, 0, "sent", True),
        ],
    )
    def test_status_only_moves_forward(self, current, rank, new, expected):
        assert should_apply(current, rank, new) is expected

    @pytest.mark.integration
    async def test_progression_and_regression(self, run, outbound_message, db_session, event_bus):
        message = await outbound_message()

        delivered, _ = await run(STATUS_HOOK, {"message_id": "wamid.out.1", "status": "delivered"})
        read, _ = await run(STATUS_HOOK, {"message_id": "wamid.out.1", "status": "read"})
        # sent שמגיע באיחור לא מחזיר אחורה
        late, _ = await run(STATUS_HOOK, {"message_id": "wamid.out.1", "status": "sent"})

        assert (delivered, read, late) == (ProcessingOutcome.DONE,) * 3
        await db_session.refresh(message)
        assert message.status == "read"
        assert message.status_rank == 4
        assert event_bus.names().count("message.status_updated") == 2

    @pytest.mark.integration
    async def test_failed_records_errors(self, run, outbound_message, db_session):
        message = await outbound_message()
        errors = [{"code": 131026, "title": "Message undeliverable"}]

        await run(STATUS_HOOK, {"message_id": "wamid.out.1", "status": "failed", "errors": errors})

        await db_session.refresh(message)
        assert message.status == "failed"
        assert message.error_details == errors

    @pytest.mark.integration
    async def test_unknown_message_is_not_an_error(self, run):
        outcome, job = await run(STATUS_HOOK, {"message_id": "wamid.nope", "status": "read"})
        assert outcome == ProcessingOutcome.DONE
        assert job.status == JobStatus.DONE

    @pytest.mark.integration
    async def test_same_status_twice_is_skipped(self, run, outbound_message):
        await outbound_message()
        await run(STATUS_HOOK, {"message_id": "wamid.out.1", "status": "delivered"})
        outcome, _ = await run(STATUS_HOOK, {"message_id": "wamid.out.1", "status": "delivered"})
        assert outcome == ProcessingOutcome.SKIPPED

    @pytest.mark.integration
    async def test_invalid_status_is_dead_lettered(self, run, services):
        outcome, _ = await run(STATUS_HOOK, {"message_id": "wamid.out.1", "status": "exploded"})
        assert outcome == ProcessingOutcome.DEAD
        [entry] = await services.dead_letters.get_pending()
        assert entry.reason == DeadLetterReason.VALIDATION_FAILED


# ============================================================================
# Webhook errors
# ============================================================================


class TestWebhookErrorProcessor:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "code, category",
        [
            (130429, "rate_limit"),
            (131048, "rate_limit"),
            (190, "auth"),
            (100, "auth"),
            (132001, "template"),
            (131026, "recipient"),
            (131051, "recipient"),
            (368, "generic"),
        ],
    )
    def test_categorize_error(self, code, category):
        assert categorize_error(code) == category

    @pytest.mark.integration
    async def test_rate_limit_sets_until_and_counts_failure(self, run, services, kv_store):
        outcome, _ = await run(ERROR_HOOK, {
            "code": 130429,
            "message": "Rate limit hit",
            "error_data": {"retry_after": 120},
            "timestamp": "1700000000",
        })

        assert outcome == ProcessingOutcome.DONE
        assert await kv_store.get(RATE_LIMIT_KEY) is not None
        assert services.whatsapp_breaker.get_metrics()["consecutive_failures"] == 1
        snapshot = await kv_store.get("circuit:whatsapp_api")
        assert snapshot["consecutive_failures"] == 1

    @pytest.mark.integration
    async def test_recipient_error_does_not_count(self, run, services, outbound_message, db_session):
        message = await outbound_message()

        await run(ERROR_HOOK, {"code": 131026, "message": "Undeliverable", "message_id": "wamid.out.1"})

        assert services.whatsapp_breaker.get_metrics()["consecutive_failures"] == 0
        await db_session.refresh(message)
        assert message.status == "failed"
        assert message.error_details[0]["code"] == 131026

    @pytest.mark.integration
    async def test_auth_error_alerts_admin_once_an_hour(self, run, fake_whatsapp):
        with patch.object(settings, "ADMIN_ALERT_PHONE", "+972500000001"):
            await run(ERROR_HOOK, {"code": 190, "message": "Token expired", "timestamp": "1"})
            await run(ERROR_HOOK, {"code": 190, "message": "Token expired", "timestamp": "2"})

        alerts = [m for m in fake_whatsapp.sent if m["kind"] == "text"]
        assert len(alerts) == 1
        assert alerts[0]["to"] == "+972500000001"
        assert "Code: 190" in alerts[0]["text"]

    @pytest.mark.integration
    async def test_template_error_marks_template(self, run, kv_store, event_bus):
        await run(ERROR_HOOK, {"code": 132001, "message": "Template missing", "template_name": "order_shipped"})

        marker = await kv_store.get("template:failing:order_shipped")
        assert marker["code"] == 132001
        assert "webhook.error" in event_bus.names()

    @pytest.mark.integration
    async def test_missing_code_is_dead_lettered(self, run, services):
        outcome, _ = await run(ERROR_HOOK, {"message": "??"})
        assert outcome == ProcessingOutcome.DEAD


# ============================================================================
# Order notifications
# ============================================================================


class TestNotificationHelpers:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "local, expected",
        [
            (dt_time(22, 30), True),
            (dt_time(3, 0), True),
            (dt_time(8, 59), True),
            (dt_time(9, 0), False),
            (dt_time(14, 0), False),
            (dt_time(21, 0), True),
        ],
    )
    def test_quiet_hours_across_midnight(self, local, expected):
        assert is_quiet_hours(local, "21:00", "09:00") is expected

    @pytest.mark.unit
    def test_quiet_hours_same_day_window(self):
        assert is_quiet_hours(dt_time(13, 0), "12:00", "14:00") is True
        assert is_quiet_hours(dt_time(14, 0), "12:00", "14:00") is False

    @pytest.mark.unit
    def test_templates(self):
        assert template_for("order_confirmation") == "order_confirmation"
        assert template_for("status_update", "on-hold") == "order_on_hold"
        assert template_for("status_update", "weird") == "order_status_update"
        assert template_for("shipping_update") == "order_shipped"
        assert template_for("delivery_confirmation") == "order_completed"

    @pytest.mark.unit
    def test_unknown_type_rejected(self):
        from app.core.exceptions import ValidationException
        with pytest.raises(ValidationException):
            template_for("promo")

    @pytest.mark.unit
    def test_carriers(self):
        assert format_carrier_name("fedex") == "FedEx"
        assert format_carrier_name("bluedart") == "Blue Dart"
        assert format_carrier_name("postnord") == "Postnord"
        assert tracking_url("UPS", "1Z 999") == "https://www.ups.com/track?tracknum=1Z%20999"
        assert tracking_url("postnord", "123") == ""


class TestOrderNotificationProcessor:

    @pytest.mark.integration
    async def test_confirmation_sent_and_logged(self, run, order_factory, fake_whatsapp, db_session, event_bus):
        order = await order_factory(total="99.80")

        outcome, _ = await run(NOTIFICATION_HOOK, {"order_id": order.id, "type": "order_confirmation"})

        assert outcome == ProcessingOutcome.DONE
        [sent] = fake_whatsapp.sent
        assert sent["template"] == "order_confirmation"
        assert sent["to"] == "+972501234567"
        assert sent["parameters"] == [str(order.id), "99.80", "2", DEFAULT_ESTIMATED_DELIVERY]

        [log] = (await db_session.execute(select(NotificationLog))).scalars().all()
        assert log.status == "sent"
        assert log.wa_message_id == "wamid.fake.1"
        assert "notification.sent" in event_bus.names()

    @pytest.mark.integration
    async def test_status_update_parameters(self, run, order_factory, fake_whatsapp):
        order = await order_factory(status=OrderStatus.SHIPPED)

        await run(NOTIFICATION_HOOK, {"order_id": order.id, "type": "status_update", "status": "shipped"})

        [sent] = fake_whatsapp.sent
        assert sent["template"] == "order_shipped"
        assert sent["parameters"] == [str(order.id), "Shipped", "🚚", ""]

    @pytest.mark.integration
    async def test_shipping_update_uses_order_tracking(self, run, order_factory, fake_whatsapp):
        order = await order_factory(tracking_number="7749", carrier="fedex")

        await run(NOTIFICATION_HOOK, {"order_id": order.id, "type": "shipping_update"})

        [sent] = fake_whatsapp.sent
        assert sent["parameters"] == [
            str(order.id),
            "FedEx",
            "7749",
            "https://www.fedex.com/fedextrack/?trknbr=7749",
        ]

    @pytest.mark.integration
    async def test_same_notification_sent_once(self, run, order_factory, fake_whatsapp):
        order = await order_factory()
        args = {"order_id": order.id, "type": "order_confirmation"}

        await run(NOTIFICATION_HOOK, args)
        outcome, _ = await run(NOTIFICATION_HOOK, args)

        assert outcome == ProcessingOutcome.SKIPPED
        assert len(fake_whatsapp.sent) == 1

    @pytest.mark.integration
    async def test_opted_out_customer_is_skipped(self, run, order_factory, fake_whatsapp, db_session, services):
        order = await order_factory()
        db_session.add(CustomerPreference(customer_phone=order.customer_phone, notifications_opt_out=True))
        await db_session.commit()

        outcome, job = await run(NOTIFICATION_HOOK, {"order_id": order.id, "type": "order_confirmation"})

        assert outcome == ProcessingOutcome.SKIPPED
        assert job.status == JobStatus.DONE
        assert fake_whatsapp.sent == []
        [log] = (await db_session.execute(select(NotificationLog))).scalars().all()
        assert log.status == "skipped_opt_out"
        key = generate_key(order.id, "order_confirmation", "order_confirmation")
        assert await services.idempotency.is_processed(key, IdempotencyScope.NOTIFICATION)

    @pytest.mark.integration
    async def test_quiet_hours_in_customer_timezone(self, services, order_factory, fake_whatsapp, db_session):
        order = await order_factory()
        db_session.add(CustomerPreference(customer_phone=order.customer_phone, timezone="Asia/Tokyo"))
        await db_session.commit()
        # 14:00 UTC = 23:00 בטוקיו
        clock = lambda: datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)  # noqa: E731
        processor = OrderNotificationProcessor(
            services.registry.get(NOTIFICATION_HOOK).deps, fake_whatsapp, clock=clock
        )
        job = await services.queue.schedule(NOTIFICATION_HOOK, {"order_id": order.id, "type": "order_confirmation"})
        job = await services.queue.claim_job(job.id, "w1")

        with patch.object(settings, "QUIET_HOURS_ENABLED", True):
            outcome = await processor.execute(job)

        assert outcome == ProcessingOutcome.SKIPPED
        assert fake_whatsapp.sent == []
        [log] = (await db_session.execute(select(NotificationLog))).scalars().all()
        assert log.status == "skipped_quiet_hours"

    @pytest.mark.integration
    async def test_daytime_in_customer_timezone_sends(self, services, order_factory, fake_whatsapp, db_session):
        order = await order_factory()
        db_session.add(CustomerPreference(customer_phone=order.customer_phone, timezone="America/New_York"))
        await db_session.commit()
        clock = lambda: datetime(2026, 3, 10, 16, 0, tzinfo=timezone.utc)  # noqa: E731
        processor = OrderNotificationProcessor(
            services.registry.get(NOTIFICATION_HOOK).deps, fake_whatsapp, clock=clock
        )
        job = await services.queue.schedule(NOTIFICATION_HOOK, {"order_id": order.id, "type": "order_confirmation"})
        job = await services.queue.claim_job(job.id, "w1")

        with patch.object(settings, "QUIET_HOURS_ENABLED", True):
            outcome = await processor.execute(job)

        assert outcome == ProcessingOutcome.DONE
        assert len(fake_whatsapp.sent) == 1

    @pytest.mark.integration
    async def test_provider_5xx_retries_and_counts_against_circuit(
        self, run, order_factory, fake_whatsapp, services, db_session
    ):
        order = await order_factory()
        fake_whatsapp.fail_with = WhatsAppError.from_response("messages", httpx.Response(503))

        outcome, job = await run(
            NOTIFICATION_HOOK,
            {"order_id": order.id, "type": "order_confirmation"},
            priority=JobPriority.URGENT,
            max_attempts=5,
        )

        assert outcome == ProcessingOutcome.RETRY
        assert job.attempt_count == 1
        assert services.whatsapp_breaker.get_metrics()["consecutive_failures"] == 1
        [log] = (await db_session.execute(select(NotificationLog))).scalars().all()
        assert log.status == "failed"

    @pytest.mark.integration
    async def test_provider_4xx_is_dead_lettered(self, run, order_factory, fake_whatsapp, services):
        order = await order_factory()
        fake_whatsapp.fail_with = WhatsAppError.from_response("messages", httpx.Response(400))

        outcome, _ = await run(NOTIFICATION_HOOK, {"order_id": order.id, "type": "order_confirmation"})

        assert outcome == ProcessingOutcome.DEAD
        assert services.whatsapp_breaker.get_metrics()["consecutive_failures"] == 0
        [entry] = await services.dead_letters.get_pending()
        assert entry.reason == DeadLetterReason.VALIDATION_FAILED

    @pytest.mark.integration
    async def test_open_circuit_defers(self, run, order_factory, fake_whatsapp, services):
        order = await order_factory()
        services.whatsapp_breaker.open("outage")

        outcome, job = await run(NOTIFICATION_HOOK, {"order_id": order.id, "type": "order_confirmation"})

        assert outcome == ProcessingOutcome.DEFERRED
        assert job.attempt_count == 0
        assert fake_whatsapp.sent == []

    @pytest.mark.integration
    async def test_missing_order_is_dead_lettered(self, run, services):
        outcome, _ = await run(NOTIFICATION_HOOK, {"order_id": 404, "type": "order_confirmation"})

        assert outcome == ProcessingOutcome.DEAD
        [entry] = await services.dead_letters.get_pending()
        assert entry.reason == DeadLetterReason.VALIDATION_FAILED
        assert entry.error_kind == "not_found"
