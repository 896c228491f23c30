"""
Tests for the exception hierarchy and error-kind classification
"""
import asyncio

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from app.core.exceptions import (
    AlreadyProcessedError,
    AppException,
    CircuitBreakerOpenError,
    ErrorCode,
    ErrorKind,
    NotFoundException,
    OrderNotFoundError,
    OutOfStockError,
    PaymentFailedError,
    SagaCompensationError,
    SagaStepError,
    SagaStepTimeoutError,
    ServiceTimeoutError,
    TransientError,
    ValidationException,
    WhatsAppError,
    error_kind_of,
)


class TestErrorKind:
    """retry ו-dead-letter מוחלטים לפי ה-kind בלבד"""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "exc, expected",
        [
            (ValidationException("bad"), ErrorKind.VALIDATION),
            (OutOfStockError(1, 3, 0), ErrorKind.VALIDATION),
            (PaymentFailedError("declined"), ErrorKind.VALIDATION),
            (TransientError("db blip"), ErrorKind.TRANSIENT),
            (ServiceTimeoutError("payments", 5), ErrorKind.TRANSIENT),
            (AlreadyProcessedError("k", "webhook"), ErrorKind.ALREADY_PROCESSED),
            (CircuitBreakerOpenError("whatsapp_api", 12.0), ErrorKind.CIRCUIT_OPEN),
            (OrderNotFoundError(42), ErrorKind.NOT_FOUND),
            (NotFoundException("Job", 7), ErrorKind.NOT_FOUND),
            (SagaStepError("reserve_inventory"), ErrorKind.SAGA_STEP),
            (SagaStepTimeoutError("create_order", 1.5), ErrorKind.SAGA_STEP),
            (SagaCompensationError("s1", "process_payment", {"x": "y"}), ErrorKind.SAGA_COMPENSATION),
        ],
    )
    def test_app_exception_kinds(self, exc: AppException, expected: ErrorKind):
        assert error_kind_of(exc) == expected

    @pytest.mark.unit
    def test_infrastructure_errors_are_transient(self):
        assert error_kind_of(OperationalError("SELECT 1", {}, Exception("db gone"))) == ErrorKind.TRANSIENT
        assert error_kind_of(httpx.ConnectError("refused")) == ErrorKind.TRANSIENT
        assert error_kind_of(asyncio.TimeoutError()) == ErrorKind.TRANSIENT

    @pytest.mark.unit
    def test_unknown_exception_defaults_to_transient(self):
        class Weird(Exception):
            pass

        assert error_kind_of(Weird()) == ErrorKind.TRANSIENT
        assert error_kind_of(None) == ErrorKind.TRANSIENT

    @pytest.mark.unit
    def test_builtin_data_errors_are_validation(self):
        assert error_kind_of(KeyError("order_id")) == ErrorKind.VALIDATION
        assert error_kind_of(ValueError("bad int")) == ErrorKind.VALIDATION

    @pytest.mark.unit
    def test_whatsapp_4xx_is_not_retryable(self):
        response = httpx.Response(400, text='{"error": "bad recipient"}')
        error = WhatsAppError.from_response("messages", response)
        assert error.kind == ErrorKind.VALIDATION
        assert error.details["status_code"] == 400

    @pytest.mark.unit
    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_whatsapp_5xx_and_429_are_transient(self, status: int):
        error = WhatsAppError.from_response("messages", httpx.Response(status))
        assert error.kind == ErrorKind.TRANSIENT


class TestExceptionPayloads:

    @pytest.mark.unit
    def test_to_dict(self):
        exc = ValidationException("phone is required", field="phone")
        body = exc.to_dict()
        assert body["error"]["code"] == ErrorCode.VALIDATION_ERROR.value
        assert body["error"]["message"] == "phone is required"
        assert body["error"]["details"] == {"field": "phone"}
        assert exc.status_code == 400

    @pytest.mark.unit
    def test_saga_step_error_records_cause_kind(self):
        exc = SagaStepError("process_payment", PaymentFailedError("declined"))
        assert exc.details["cause_type"] == "PaymentFailedError"
        assert exc.details["cause_kind"] == "validation"
        assert "process_payment" in exc.message

    @pytest.mark.unit
    def test_step_timeout_message(self):
        exc = SagaStepTimeoutError("create_order", 2.0)
        assert exc.error_code == ErrorCode.SAGA_STEP_TIMEOUT
        assert "timed out after 2.0s" in str(exc)

    @pytest.mark.unit
    def test_compensation_error_carries_result(self):
        marker = object()
        exc = SagaCompensationError("s1", "process_payment", {"create_order": "db down"}, result=marker)
        assert exc.result is marker
        assert exc.status_code == 500
        assert exc.details["compensation_errors"] == {"create_order": "db down"}
