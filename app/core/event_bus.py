"""
Event Bus - נקודות הרחבה מפורשות במקום hooks גלובליים.

Publisher.emit(event_name, data) / Subscriber.on(event_name, handler).
מנויים נרשמים פעם אחת ב-startup (app.domain.container); handler שנכשל
נרשם בלוג ולא עוצר את שאר ה-handlers או את הפעולה שפרסמה את האירוע.

אירועים שמתפרסמים במערכת:
- idempotency.claimed / idempotency.completed
- job.completed / job.retry_scheduled / job.dead_lettered / job.replayed
- conversation.event / message.status_updated / webhook.error
- notification.sent / notification.skipped
- saga.completed / saga.compensated / saga.compensation_failed
- checkout.completed / checkout.failed
- payment.webhook_processed
"""
from __future__ import annotations

import inspect
from collections import defaultdict
from typing import Any, Awaitable, Callable, Protocol, Union

from app.core.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[str, dict[str, Any]], Union[None, Awaitable[None]]]


class Publisher(Protocol):
    async def emit(self, event_name: str, data: dict[str, Any]) -> None: ...


class Subscriber(Protocol):
    def on(self, event_name: str, handler: EventHandler) -> None: ...


class EventBus:
    """מימוש in-process של Publisher + Subscriber."""

    # מנוי ל-"*" מקבל את כל האירועים
    WILDCARD = "*"

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self.emitted: list[tuple[str, dict[str, Any]]] = []
        self._record = False

    def on(self, event_name: str, handler: EventHandler) -> None:
        self._handlers[event_name].append(handler)

    def record_events(self, enabled: bool = True) -> None:
        """שמירת אירועים ב-self.emitted - לבדיקות ודיבאג."""
        self._record = enabled

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        return [*self._handlers.get(event_name, []), *self._handlers.get(self.WILDCARD, [])]

    async def emit(self, event_name: str, data: dict[str, Any]) -> None:
        if self._record:
            self.emitted.append((event_name, dict(data)))

        for handler in self.handlers_for(event_name):
            try:
                result = handler(event_name, data)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "Event handler failed",
                    extra_data={
                        "event": event_name,
                        "handler": getattr(handler, "__qualname__", repr(handler)),
                        "error": str(exc),
                    },
                    exc_info=True,
                )

    def names(self) -> list[str]:
        return [name for name, _ in self.emitted]
