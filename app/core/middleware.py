"""
FastAPI Middleware

Provides request/response middleware for:
- Correlation ID injection
- Request logging (phones masked in path and query)
- Global error handling (AppException -> to_dict() + correlation id)
- Security headers
- Webhook rate limiting, counted in the shared KeyValueStore
"""
import re
import time
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import AppException, ErrorCode
from app.core.key_value_store import KeyValueStore, get_key_value_store
from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)

logger = get_logger(__name__)

# רצף של 10-15 ספרות (עם + אופציונלי) - מספר טלפון ב-path או ב-query
_PHONE_RE = re.compile(r"\+?\d{6,11}(\d{4})")
# correlation id מבחוץ נכנס ללוגים - רק תווים בטוחים ואורך סביר
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")

_RATE_LIMIT_PREFIX = "ratelimit:webhook"


def mask_pii(value: str) -> str:
    """מיסוך מספרי טלפון - 4 הספרות האחרונות מוחלפות ב-****"""
    return _PHONE_RE.sub(lambda m: m.group(0)[:-4] + "****", value)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID to requests"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        incoming = request.headers.get("X-Correlation-ID")
        if incoming and not _CORRELATION_ID_RE.match(incoming):
            incoming = None
        correlation_id = set_correlation_id(incoming)
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and responses (with PII masking)"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        start_time = time.time()
        safe_path = mask_pii(request.url.path)
        # signature / token לא נכנסים ללוג
        query = {
            key: mask_pii(value)
            for key, value in request.query_params.items()
            if key not in ("hub.verify_token", "token")
        }

        logger.info(
            f"Request started: {request.method} {safe_path}",
            extra_data={
                "method": request.method,
                "path": safe_path,
                "query_params": query,
                "client_host": request.client.host if request.client else None,
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {safe_path}",
                extra_data={
                    "method": request.method,
                    "path": safe_path,
                    "duration_seconds": round(time.time() - start_time, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        log_level = "info" if response.status_code < 400 else "warning"
        getattr(logger, log_level)(
            f"Request completed: {request.method} {safe_path}",
            extra_data={
                "method": request.method,
                "path": safe_path,
                "status_code": response.status_code,
                "duration_seconds": round(time.time() - start_time, 4),
            }
        )
        return response


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """AppException -> to_dict(); 5xx נרשם כ-error, השאר כ-warning"""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "error_kind": exc.kind.value,
            "message": exc.message,
            "details": exc.details,
            "path": mask_pii(request.url.path),
        }
    )

    content = exc.to_dict()
    content["error"]["correlation_id"] = get_correlation_id()
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": mask_pii(request.url.path),
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {},
                "correlation_id": get_correlation_id(),
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    כותרות אבטחה לכל תשובה.

    HSTS רק מחוץ ל-DEBUG, כדי לא לחסום פיתוח מקומי ב-HTTP.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"

        if not self._debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


class WebhookRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Rate limiting לנקודות webhook - חלון קבוע לפי IP.

    המונה יושב ב-KeyValueStore (incr אטומי עם TTL), כך שכל ה-workers
    חולקים את אותה מכסה. מחזיר 429 עם Retry-After כשהמכסה נגמרה.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 300,
        window_seconds: int = 60,
        kv_store: Optional[KeyValueStore] = None,
    ) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._kv_store = kv_store

    def _store(self) -> KeyValueStore:
        return self._kv_store or get_key_value_store()

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        path = request.url.path
        if "/webhooks/" not in path:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        now = time.time()
        window = int(now // self._window_seconds)
        key = f"{_RATE_LIMIT_PREFIX}:{client_ip}:{window}"
        count = await self._store().incr(key, ttl=self._window_seconds * 2)

        if count > self._max_requests:
            retry_after = max(1, int((window + 1) * self._window_seconds - now))
            logger.warning(
                "Rate limit exceeded for webhook",
                extra_data={
                    "client_ip": client_ip,
                    "path": path,
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": {
                        "code": ErrorCode.RATE_LIMITED.value,
                        "message": "Too many requests. Please try again later.",
                        "details": {"retry_after_seconds": retry_after},
                    }
                },
                headers={
                    "Retry-After": str(retry_after),
                    "X-Correlation-ID": get_correlation_id(),
                },
            )

        return await call_next(request)


def setup_middleware(app: FastAPI) -> None:
    """Setup all middleware for the application"""
    from app.core.config import settings

    # ה-middleware האחרון שנוסף הוא ה-outermost.
    # סדר עיבוד בקשה: SecurityHeaders → CorrelationId → RequestLogging → RateLimit → app
    app.add_middleware(
        WebhookRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
