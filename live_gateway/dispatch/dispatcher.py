"""
Event Dispatcher: delivers canonical events to plugin handlers.

Design:
- Handlers register per event kind; several per kind are allowed
- Delivery is synchronous, in registration order, in arrival order
- A raising handler is logged and isolated; the others still run
- No retry: a failed invocation is dropped, recovery is the handler's job
- Handlers that need I/O schedule their own work and return immediately
"""

import structlog
from collections import defaultdict
from typing import Callable

from ..metrics import EVENTS_DISPATCHED, HANDLER_FAILURES
from ..models import CanonicalEvent, EventKind

logger = structlog.get_logger(__name__)

Handler = Callable[[CanonicalEvent], object]


def handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class EventDispatcher:

    def __init__(self):
        self._handlers: dict[EventKind, list[Handler]] = defaultdict(list)
        self._catch_all: list[Handler] = []
        self._dispatched_count = 0
        self._failure_count = 0

    def register(self, kind: EventKind | str, handler: Handler) -> None:
        """Invoke `handler` for every future event of `kind`."""
        self._handlers[EventKind.parse(kind)].append(handler)
        logger.debug("handler_registered", event_kind=EventKind.parse(kind).value,
                     handler=handler_name(handler))

    def register_all(self, handler: Handler) -> None:
        """Invoke `handler` for every event, after the kind-specific handlers."""
        self._catch_all.append(handler)

    def unregister(self, kind: EventKind | str, handler: Handler) -> bool:
        handlers = self._handlers.get(EventKind.parse(kind), [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def handler_count(self, kind: EventKind | str) -> int:
        return len(self._handlers.get(EventKind.parse(kind), [])) + len(self._catch_all)

    def dispatch(self, event: CanonicalEvent) -> int:
        """
        Invoke every handler for the event's kind. Returns how many
        handlers completed without raising.
        """
        handlers = list(self._handlers.get(event.kind, [])) + list(self._catch_all)
        delivered = 0

        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                self._failure_count += 1
                HANDLER_FAILURES.labels(event_kind=event.kind.value).inc()
                logger.error(
                    "handler_failed",
                    event_kind=event.kind.value,
                    event_id=event.event_id,
                    handler=handler_name(handler),
                    error=str(e),
                    exc_info=True,
                )

        self._dispatched_count += 1
        EVENTS_DISPATCHED.labels(event_kind=event.kind.value).inc()
        return delivered

    @property
    def stats(self) -> dict:
        return {
            "dispatched": self._dispatched_count,
            "handler_failures": self._failure_count,
        }
