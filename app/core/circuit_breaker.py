"""
Circuit Breaker Pattern Implementation

Guards calls to unreliable external services (WhatsApp Cloud API, payment API).
The breaker itself does no I/O: callers ask ``is_available()`` before a call and
report the outcome with ``record_success()`` / ``record_failure()``.
"""
import asyncio
import threading
import time
from enum import Enum
from typing import Any, Callable, TypeVar, ParamSpec
from dataclasses import dataclass

from app.core.config import settings
from app.core.logging import get_logger
from app.core.exceptions import CircuitBreakerOpenError

logger = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "closed"        # Normal operation, requests pass through
    OPEN = "open"            # Failing, requests blocked
    HALF_OPEN = "half_open"  # One trial call decides


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5       # Consecutive failures before opening
    success_threshold: int = 1       # Trial successes in half-open to close
    cooldown_seconds: float = 30.0   # Time in OPEN before a trial is allowed
    half_open_max_calls: int = 1     # Trial calls admitted per half-open period


@dataclass
class CircuitBreakerState:
    """State tracking for circuit breaker"""
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    success_count: int = 0
    opened_at: float = 0.0
    half_open_calls: int = 0
    last_failure_reason: str | None = None
    total_failures: int = 0
    total_successes: int = 0


class CircuitBreaker:
    """
    Circuit breaker for external service protection.

    States:
    - CLOSED: Normal operation, counting consecutive failures
    - OPEN: Service is failing, block all requests until cooldown elapses
    - HALF_OPEN: Admit a single trial call; its outcome closes or reopens
    """

    # Class-level registry (one breaker per service per process)
    _instances: dict[str, "CircuitBreaker"] = {}
    _instances_lock = threading.Lock()

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitBreakerState()
        # threading.Lock ולא asyncio.Lock - בטוח גם בין event loops שונים ב-Celery
        self._lock = threading.Lock()

    @classmethod
    def get_instance(
        cls,
        service_name: str,
        config: CircuitBreakerConfig | None = None
    ) -> "CircuitBreaker":
        """Get or create circuit breaker instance for a service"""
        if service_name not in cls._instances:
            with cls._instances_lock:
                if service_name not in cls._instances:
                    cls._instances[service_name] = cls(service_name, config)
        return cls._instances[service_name]

    @classmethod
    def all_instances(cls) -> list["CircuitBreaker"]:
        with cls._instances_lock:
            return list(cls._instances.values())

    @classmethod
    def reset_all(cls) -> None:
        """Reset all circuit breakers (for testing)"""
        with cls._instances_lock:
            cls._instances.clear()

    @property
    def state(self) -> CircuitState:
        return self._state.state

    @property
    def is_closed(self) -> bool:
        return self._state.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state.state == CircuitState.HALF_OPEN

    def _cooldown_elapsed(self) -> bool:
        return self._clock() - self._state.opened_at >= self.config.cooldown_seconds

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state. Caller must hold the lock."""
        old_state = self._state.state
        if old_state == new_state:
            return
        self._state.state = new_state

        if new_state == CircuitState.OPEN:
            self._state.opened_at = self._clock()
            self._state.half_open_calls = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._state.half_open_calls = 0
            self._state.success_count = 0
        elif new_state == CircuitState.CLOSED:
            self._state.consecutive_failures = 0
            self._state.success_count = 0
            self._state.half_open_calls = 0

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker '{self.service_name}' transitioned",
            extra_data={
                "service": self.service_name,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "reason": self._state.last_failure_reason,
            }
        )

    def is_available(self) -> bool:
        """
        Check whether a call may be attempted now.

        OPEN moves to HALF_OPEN once the cooldown has elapsed; HALF_OPEN admits
        ``half_open_max_calls`` trial calls and rejects the rest.
        """
        with self._lock:
            if self._state.state == CircuitState.CLOSED:
                return True

            if self._state.state == CircuitState.OPEN:
                if not self._cooldown_elapsed():
                    return False
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state.half_open_calls < self.config.half_open_max_calls:
                self._state.half_open_calls += 1
                return True
            return False

    can_execute = is_available

    def record_success(self) -> None:
        """Record a successful call"""
        with self._lock:
            self._state.total_successes += 1
            if self._state.state == CircuitState.HALF_OPEN:
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            else:
                self._state.consecutive_failures = 0

    def record_failure(self, reason: str | Exception | None = None) -> None:
        """Record a failed call"""
        with self._lock:
            self._state.consecutive_failures += 1
            self._state.total_failures += 1
            self._state.last_failure_reason = str(reason) if reason is not None else None

            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "consecutive_failures": self._state.consecutive_failures,
                    "threshold": self.config.failure_threshold,
                    "reason": self._state.last_failure_reason,
                }
            )

            if self._state.state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif (
                self._state.state == CircuitState.CLOSED
                and self._state.consecutive_failures >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    def open(self, reason: str = "manual") -> None:
        """פתיחה ידנית ע"י מפעיל"""
        with self._lock:
            self._state.last_failure_reason = reason
            self._transition_to(CircuitState.OPEN)

    def close(self) -> None:
        """סגירה ידנית ע"י מפעיל - מאפס מונים"""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)

    def get_retry_after(self) -> float:
        """Seconds until a trial call may be attempted"""
        if self._state.state != CircuitState.OPEN:
            return 0.0
        remaining = self.config.cooldown_seconds - (self._clock() - self._state.opened_at)
        return max(0.0, remaining)

    def get_metrics(self) -> dict[str, Any]:
        with self._lock:
            return {
                "service": self.service_name,
                "state": self._state.state.value,
                "consecutive_failures": self._state.consecutive_failures,
                "failure_threshold": self.config.failure_threshold,
                "cooldown_seconds": self.config.cooldown_seconds,
                "opened_at": self._state.opened_at or None,
                "retry_after_seconds": round(self.get_retry_after(), 1),
                "last_failure_reason": self._state.last_failure_reason,
                "total_failures": self._state.total_failures,
                "total_successes": self._state.total_successes,
            }

    def snapshot(self) -> dict[str, Any]:
        """מצב מינימלי לשיתוף בין workers (נשמר ב-KeyValueStore)"""
        with self._lock:
            return {
                "state": self._state.state.value,
                "consecutive_failures": self._state.consecutive_failures,
                "opened_at": self._state.opened_at,
                "last_failure_reason": self._state.last_failure_reason,
            }

    def restore(self, snapshot: dict[str, Any]) -> None:
        """טעינת מצב שנשמר ע"י worker אחר"""
        with self._lock:
            self._state.state = CircuitState(snapshot.get("state", CircuitState.CLOSED.value))
            self._state.consecutive_failures = int(snapshot.get("consecutive_failures", 0))
            self._state.opened_at = float(snapshot.get("opened_at") or 0.0)
            self._state.last_failure_reason = snapshot.get("last_failure_reason")
            self._state.half_open_calls = 0
            self._state.success_count = 0

    async def execute(
        self,
        func: Callable[P, T],
        *args: P.args,
        **kwargs: P.kwargs
    ) -> T:
        """
        Execute a function with circuit breaker protection.

        Raises:
            CircuitBreakerOpenError: If the circuit does not admit the call
        """
        if not self.is_available():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            if asyncio.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e)
            raise

        self.record_success()
        return result


def _default_config() -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        success_threshold=1,
        cooldown_seconds=settings.CIRCUIT_COOLDOWN_SECONDS,
    )


def get_whatsapp_circuit_breaker() -> CircuitBreaker:
    """Circuit breaker for the WhatsApp Cloud API"""
    return CircuitBreaker.get_instance("whatsapp_api", _default_config())


def get_payment_circuit_breaker() -> CircuitBreaker:
    """Circuit breaker for the payment API"""
    return CircuitBreaker.get_instance("payment_api", _default_config())
