"""
Tests for Logging Infrastructure
"""
import pytest
import json
import logging
from io import StringIO

from app.core.logging import (
    setup_logging,
    get_logger,
    set_correlation_id,
    get_correlation_id,
    generate_correlation_id,
    JSONFormatter,
    correlation_id_var,
    log_context_var,
    bind_log_context,
    log_async_operation,
)
from app.domain.processors.inbound_message import HOOK_NAME as MESSAGE_HOOK
from app.domain.sagas import KeyValueSagaStateStore, SagaOrchestrator, SagaStep


class TestCorrelationId:
    """Tests for correlation ID management"""

    @pytest.mark.unit
    def test_generate_correlation_id(self):
        """Test correlation ID generation"""
        cid = generate_correlation_id()

        assert cid is not None
        assert len(cid) == 8
        assert cid.isalnum()

    @pytest.mark.unit
    def test_set_and_get_correlation_id(self):
        """Test setting and getting correlation ID"""
        test_id = "test1234"
        result = set_correlation_id(test_id)

        assert result == test_id
        assert get_correlation_id() == test_id

    @pytest.mark.unit
    def test_set_correlation_id_generates_if_none(self):
        """Test that set_correlation_id generates ID if none provided"""
        result = set_correlation_id(None)

        assert result is not None
        assert len(result) == 8


class TestJSONFormatter:
    """Tests for JSON log formatting"""

    @pytest.fixture
    def log_stream(self) -> StringIO:
        """Create a string stream for capturing logs"""
        return StringIO()

    @pytest.fixture
    def json_handler(self, log_stream: StringIO) -> logging.Handler:
        """Create a handler with JSON formatter"""
        handler = logging.StreamHandler(log_stream)
        handler.setFormatter(JSONFormatter())
        return handler

    @pytest.mark.unit
    def test_json_format_basic(self, log_stream: StringIO, json_handler: logging.Handler):
        """Test basic JSON log formatting"""
        logger = logging.getLogger("test_json_basic")
        logger.addHandler(json_handler)
        logger.setLevel(logging.INFO)

        logger.info("Test message")

        log_output = log_stream.getvalue()
        log_entry = json.loads(log_output)

        assert log_entry["level"] == "INFO"
        assert log_entry["message"] == "Test message"
        assert "timestamp" in log_entry
        assert log_entry["logger"] == "test_json_basic"

    @pytest.mark.unit
    def test_json_format_with_correlation_id(
        self,
        log_stream: StringIO,
        json_handler: logging.Handler
    ):
        """Test JSON formatting includes correlation ID"""
        set_correlation_id("testcorr")

        logger = logging.getLogger("test_json_corr")
        logger.addHandler(json_handler)
        logger.setLevel(logging.INFO)

        logger.info("Correlated message")

        log_output = log_stream.getvalue()
        log_entry = json.loads(log_output)

        assert log_entry.get("correlation_id") == "testcorr"

    @pytest.mark.unit
    def test_json_format_with_exception(
        self,
        log_stream: StringIO,
        json_handler: logging.Handler
    ):
        """Test JSON formatting includes exception info"""
        logger = logging.getLogger("test_json_exc")
        logger.addHandler(json_handler)
        logger.setLevel(logging.ERROR)

        try:
            raise ValueError("Test error")
        except ValueError:
            logger.error("Error occurred", exc_info=True)

        log_output = log_stream.getvalue()
        log_entry = json.loads(log_output)

        assert log_entry["level"] == "ERROR"
        assert "exception" in log_entry
        assert "ValueError" in log_entry["exception"]


class TestStructuredLogger:
    """Tests for structured logger functionality"""

    @pytest.mark.unit
    def test_get_logger(self):
        """Test getting a logger instance"""
        logger = get_logger("test.module")

        assert logger is not None
        assert logger.name == "test.module"

    @pytest.mark.unit
    def test_logger_with_extra_data(self):
        """Test logging with extra data"""
        log_stream = StringIO()
        handler = logging.StreamHandler(log_stream)
        handler.setFormatter(JSONFormatter())

        logger = get_logger("test.extra")
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

        # Note: extra_data is our custom parameter
        logger.info("Message with data", extra_data={"user_id": 123, "action": "test"})

        log_output = log_stream.getvalue()
        log_entry = json.loads(log_output)

        assert log_entry["extra"]["user_id"] == 123
        assert log_entry["extra"]["action"] == "test"


class TestAsyncLoggingDecorator:
    """Tests for async operation logging decorator"""

    @pytest.mark.unit
    async def test_log_async_operation_success(self):
        """Test async operation logging on success"""
        @log_async_operation("test_operation")
        async def success_func():
            return "success"

        result = await success_func()
        assert result == "success"

    @pytest.mark.unit
    async def test_log_async_operation_failure(self):
        """Test async operation logging on failure"""
        @log_async_operation("failing_operation")
        async def failing_func():
            raise ValueError("Test failure")

        with pytest.raises(ValueError):
            await failing_func()


class TestCommerceHubFields:
    """שדות שנוספו לכל רשומת JSON"""

    @pytest.mark.unit
    def test_app_name_stamped(self):
        log_stream = StringIO()
        handler = logging.StreamHandler(log_stream)
        handler.setFormatter(JSONFormatter(app_name="commerce-hub-worker"))

        logger = get_logger("test.app_name")
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.info("job started", extra_data={"job_id": 7})

        log_entry = json.loads(log_stream.getvalue())
        assert log_entry["app"] == "commerce-hub-worker"
        assert log_entry["timestamp"].endswith("Z")

    @pytest.mark.unit
    def test_hebrew_not_escaped(self):
        log_stream = StringIO()
        handler = logging.StreamHandler(log_stream)
        handler.setFormatter(JSONFormatter())

        logger = get_logger("test.hebrew")
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.info("הזמנה אושרה")

        assert "הזמנה אושרה" in log_stream.getvalue()

    @pytest.mark.unit
    def test_get_correlation_id_persists_generated_value(self):
        """worker בלי בקשת HTTP מקבל id יציב לכל ה-job"""
        token = correlation_id_var.set("")
        try:
            first = get_correlation_id()
            assert get_correlation_id() == first
        finally:
            correlation_id_var.reset(token)

    @pytest.mark.unit
    def test_setup_logging_text_format(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(level="debug", json_format=False)
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert not isinstance(root.handlers[0].formatter, JSONFormatter)
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)


def _capture(name: str) -> tuple[logging.Logger, StringIO, logging.Handler]:
    log_stream = StringIO()
    handler = logging.StreamHandler(log_stream)
    handler.setFormatter(JSONFormatter())
    logger = get_logger(name)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger, log_stream, handler


def _entries(log_stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in log_stream.getvalue().splitlines()]


class TestBoundLogContext:
    """שדות job / saga על כל רשומה בזמן הריצה"""

    @pytest.mark.unit
    def test_fields_stamped_inside_block_only(self):
        logger, log_stream, handler = _capture("test.bound")
        try:
            with bind_log_context(job_id=12, hook="wch_process_webhook_status"):
                logger.info("inside")
            logger.info("outside")
        finally:
            logger.removeHandler(handler)

        inside, outside = _entries(log_stream)
        assert inside["context"] == {"job_id": 12, "hook": "wch_process_webhook_status"}
        assert "context" not in outside
        assert log_context_var.get() == {}

    @pytest.mark.unit
    def test_nested_blocks_accumulate(self):
        with bind_log_context(job_id=3):
            with bind_log_context(saga_id="checkout_1") as context:
                assert context == {"job_id": 3, "saga_id": "checkout_1"}
            assert log_context_var.get() == {"job_id": 3}

    @pytest.mark.unit
    async def test_saga_step_logs_carry_job_and_saga(self, kv_store):
        logger, log_stream, handler = _capture("test.saga_step")

        async def step(context):
            logger.info("charging")
            return {}

        orchestrator = SagaOrchestrator(KeyValueSagaStateStore(kv_store))
        try:
            with bind_log_context(job_id=5):
                await orchestrator.execute("checkout_9", "checkout", {}, [SagaStep("charge", step)])
        finally:
            logger.removeHandler(handler)

        [entry] = _entries(log_stream)
        assert entry["context"] == {"job_id": 5, "saga_id": "checkout_9", "saga_type": "checkout"}

    @pytest.mark.integration
    async def test_processor_logs_carry_job_id(self, services):
        logger, log_stream, handler = _capture("app.domain.processors.base")
        job = await services.dispatcher.dispatch(MESSAGE_HOOK, {
            "message_id": "wamid.ctx",
            "from": "972501234567",
            "message": {"id": "wamid.ctx", "type": "text", "text": {"body": "hi"}},
        })
        try:
            await services.runner.run_due_jobs("worker-1")
        finally:
            logger.removeHandler(handler)

        processed = [e for e in _entries(log_stream) if e["message"] == "Job processed"]
        assert [e["context"] for e in processed] == [{"job_id": job.id, "hook": MESSAGE_HOOK}]
