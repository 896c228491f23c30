"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
Every exception maps to an ErrorKind; retry and dead-letter decisions are made on
the kind alone.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_EXISTS = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"
    PAYLOAD_TOO_LARGE = "ERR_1007"

    # Processing errors (2xxx)
    TRANSIENT_FAILURE = "ERR_2001"
    ALREADY_PROCESSED = "ERR_2002"
    ORDER_NOT_FOUND = "ERR_2003"
    OUT_OF_STOCK = "ERR_2004"
    PAYMENT_FAILED = "ERR_2005"

    # Webhook errors (3xxx)
    INVALID_SIGNATURE = "ERR_3001"
    STALE_TIMESTAMP = "ERR_3002"
    UNKNOWN_GATEWAY = "ERR_3003"

    # External service errors (5xxx)
    WHATSAPP_ERROR = "ERR_5002"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"
    PAYMENT_SERVICE_ERROR = "ERR_5005"

    # Saga errors (6xxx)
    SAGA_STEP_FAILED = "ERR_6001"
    SAGA_STEP_TIMEOUT = "ERR_6002"
    SAGA_COMPENSATION_FAILED = "ERR_6003"
    SAGA_CONCURRENT_EXECUTION = "ERR_6004"


class ErrorKind(str, Enum):
    """סיווג שגיאות לצורך החלטות retry / dead-letter"""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    ALREADY_PROCESSED = "already_processed"
    CIRCUIT_OPEN = "circuit_open"
    NOT_FOUND = "not_found"
    SAGA_STEP = "saga_step"
    SAGA_COMPENSATION = "saga_compensation"


class AppException(Exception):
    """Base exception for all application errors"""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    kind = ErrorKind.VALIDATION

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    kind = ErrorKind.NOT_FOUND

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class OrderNotFoundError(NotFoundException):
    """Raised when a notification refers to an order that does not exist"""

    def __init__(self, order_id: Any):
        super().__init__("Order", order_id, error_code=ErrorCode.ORDER_NOT_FOUND)


class TransientError(AppException):
    """Network, timeout or database hiccup - safe to retry"""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.TRANSIENT_FAILURE,
            status_code=503,
            details=details
        )


class AlreadyProcessedError(AppException):
    """Raised when work was already done by an earlier delivery of the same event"""

    kind = ErrorKind.ALREADY_PROCESSED

    def __init__(self, key: str, scope: str):
        super().__init__(
            message=f"Already processed: {scope}/{key}",
            error_code=ErrorCode.ALREADY_PROCESSED,
            status_code=200,
            details={"key": key, "scope": scope}
        )


class OutOfStockError(ValidationException):
    """Raised when a cart line can no longer be fulfilled"""

    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            message=f"Product {product_id} has {available} in stock, {requested} requested",
            details={
                "product_id": product_id,
                "requested": requested,
                "available": available,
            }
        )
        self.error_code = ErrorCode.OUT_OF_STOCK


class PaymentFailedError(AppException):
    """Raised when a payment gateway declines a charge"""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.PAYMENT_FAILED,
            status_code=402,
            details=details
        )


# ============================================================================
# Webhook authentication
# ============================================================================

class SignatureVerificationError(AppException):
    """Raised when a webhook signature is missing or does not match"""

    kind = ErrorKind.VALIDATION

    def __init__(self, source: str, status_code: int = 401):
        super().__init__(
            message=f"Invalid webhook signature ({source})",
            error_code=ErrorCode.INVALID_SIGNATURE,
            status_code=status_code,
            details={"source": source}
        )


class WebhookTimestampError(AppException):
    """Raised when a signed webhook falls outside the replay window"""

    kind = ErrorKind.VALIDATION

    def __init__(self, source: str, skew_seconds: float, status_code: int = 401):
        super().__init__(
            message=f"Webhook timestamp outside tolerance ({source})",
            error_code=ErrorCode.STALE_TIMESTAMP,
            status_code=status_code,
            details={"source": source, "skew_seconds": round(skew_seconds, 1)}
        )


class PayloadTooLargeError(AppException):
    """Raised when a webhook body exceeds the configured limit"""

    kind = ErrorKind.VALIDATION

    def __init__(self, size: int, limit: int):
        super().__init__(
            message=f"Payload of {size} bytes exceeds limit of {limit}",
            error_code=ErrorCode.PAYLOAD_TOO_LARGE,
            status_code=413,
            details={"size": size, "limit": limit}
        )


# ============================================================================
# External services
# ============================================================================

class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    kind = ErrorKind.TRANSIENT

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class WhatsAppError(ExternalServiceException):
    """Raised when WhatsApp API fails"""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        retryable: bool = True
    ):
        super().__init__(
            service_name="whatsapp",
            message=f"WhatsApp API error: {message}",
            error_code=ErrorCode.WHATSAPP_ERROR,
            details=details
        )
        # 4xx מה-API (נמען לא תקין, template חסר) לא ישתפר ב-retry
        if not retryable:
            self.kind = ErrorKind.VALIDATION

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        message: str | None = None,
        max_response_chars: int = 500
    ) -> "WhatsAppError":
        """
        יצירת WhatsAppError מתוך HTTP response בצורה עקבית.

        Args:
            operation: שם הפעולה (לדוגמה: messages)
            response: אובייקט response (httpx.Response)
            message: הודעת שגיאה מותאמת (אם לא סופק - נבנית אוטומטית)
            max_response_chars: אורך מקסימלי לשמירת response_text
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        retryable = status_code is None or status_code >= 500 or status_code == 429
        return cls(
            message=message or f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
            retryable=retryable,
        )


class PaymentServiceError(ExternalServiceException):
    """Raised when the payment API is unreachable or returns 5xx"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="payments",
            message=f"Payment API error: {message}",
            error_code=ErrorCode.PAYMENT_SERVICE_ERROR,
            details=details
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
        self.retry_after_seconds = retry_after_seconds


# ============================================================================
# Saga
# ============================================================================

class SagaStepError(AppException):
    """Raised when a saga step fails; triggers compensation"""

    kind = ErrorKind.SAGA_STEP

    def __init__(
        self,
        step_name: str,
        cause: BaseException | None = None,
        error_code: ErrorCode = ErrorCode.SAGA_STEP_FAILED,
    ):
        message = f"Saga step '{step_name}' failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=409,
            details={
                "step": step_name,
                "cause_type": type(cause).__name__ if cause is not None else None,
                "cause_kind": error_kind_of(cause).value if cause is not None else None,
            }
        )
        self.step_name = step_name
        self.cause = cause


class SagaStepTimeoutError(SagaStepError):
    """Raised when a saga step does not finish within its timeout"""

    def __init__(self, step_name: str, timeout_seconds: float):
        super().__init__(step_name, error_code=ErrorCode.SAGA_STEP_TIMEOUT)
        self.message = f"Saga step '{step_name}' timed out after {timeout_seconds}s"
        self.args = (self.message,)
        self.details["timeout_seconds"] = timeout_seconds


class SagaCompensationError(AppException):
    """
    Raised when one or more compensations fail.

    Leaves partially applied state behind; operator action is required.
    """

    kind = ErrorKind.SAGA_COMPENSATION

    def __init__(
        self,
        saga_id: str,
        failed_step: str | None,
        compensation_errors: dict[str, str],
        result: Any = None,
    ):
        super().__init__(
            message=(
                f"Saga {saga_id} could not be fully compensated "
                f"(failed at '{failed_step}', {len(compensation_errors)} compensation error(s))"
            ),
            error_code=ErrorCode.SAGA_COMPENSATION_FAILED,
            status_code=500,
            details={
                "saga_id": saga_id,
                "failed_step": failed_step,
                "compensation_errors": compensation_errors,
            }
        )
        self.saga_id = saga_id
        self.failed_step = failed_step
        self.compensation_errors = compensation_errors
        self.result = result


class SagaConcurrentExecutionError(AppException):
    """Raised when a saga id is already running elsewhere"""

    kind = ErrorKind.ALREADY_PROCESSED

    def __init__(self, saga_id: str):
        super().__init__(
            message=f"Saga {saga_id} is already running",
            error_code=ErrorCode.SAGA_CONCURRENT_EXECUTION,
            status_code=409,
            details={"saga_id": saga_id}
        )


def error_kind_of(exc: BaseException | None) -> ErrorKind:
    """
    מיפוי exception ל-ErrorKind.

    AppException נושא kind משלו. שגיאות תשתית (DB / רשת / timeout) נחשבות זמניות.
    שגיאה לא מוכרת נחשבת זמנית - עדיף retry מוגבל מאשר איבוד אירוע.
    """
    if exc is None:
        return ErrorKind.TRANSIENT
    if isinstance(exc, AppException):
        return exc.kind
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ErrorKind.VALIDATION
    return ErrorKind.TRANSIENT
