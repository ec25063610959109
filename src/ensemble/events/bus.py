"""In-process event stream for workflow and protocol lifecycle events.

Handlers are routed by scope: an event type, an execution id, or every
event. Emission fans out to all matching handlers concurrently.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from .types import Event, EventType

logger = structlog.get_logger()

EventHandler = Callable[[Event], Awaitable[None]]

_TYPE = "type"
_EXECUTION = "execution"
_ALL = ("all", "*")


class EventBus:
    """Routes lifecycle events to async handlers.

    A failing handler is logged and never affects the emitter or the other
    handlers. Handlers only see events emitted after they subscribe.

    Example:
        >>> bus = EventBus()
        >>> bus.subscribe(EventType.WORKFLOW_COMPLETED, notify)
        >>> bus.subscribe_execution(execution_id, stream_to_client)
        >>> await bus.emit(event)
    """

    def __init__(self) -> None:
        self._routes: dict[tuple[str, str], list[EventHandler]] = {}

    def subscribe(self, event_type: EventType | str, handler: EventHandler) -> None:
        """Call ``handler`` for every event of one type."""
        self._add((_TYPE, str(event_type)), handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Call ``handler`` for every event (logging, metrics, audit)."""
        self._add(_ALL, handler)

    def subscribe_execution(self, execution_id: str, handler: EventHandler) -> None:
        """Call ``handler`` for every event of one workflow execution or protocol run."""
        self._add((_EXECUTION, execution_id), handler)

    def unsubscribe(self, event_type: EventType | str, handler: EventHandler) -> bool:
        """Returns True if the handler was subscribed to the type."""
        return self._remove((_TYPE, str(event_type)), handler)

    def unsubscribe_all(self, handler: EventHandler) -> bool:
        """Returns True if the handler was subscribed to every event."""
        return self._remove(_ALL, handler)

    def unsubscribe_execution(self, execution_id: str, handler: EventHandler | None = None) -> bool:
        """Remove one handler, or every handler when none is given, of an execution.

        Returns:
            True if anything was removed
        """
        key = (_EXECUTION, execution_id)
        if handler is None:
            return self._routes.pop(key, None) is not None
        return self._remove(key, handler)

    async def emit(self, event: Event) -> None:
        """Deliver an event to type, execution and global handlers.

        Args:
            event: Event to deliver
        """
        event_type = str(event.type)
        handlers = [
            *self._routes.get((_TYPE, event_type), ()),
            *self._routes.get((_EXECUTION, event.execution_id), ()),
            *self._routes.get(_ALL, ()),
        ]
        if not handlers:
            logger.debug("event_no_handlers", event_type=event_type)
            return

        logger.debug(
            "event_emitting",
            event_type=event_type,
            execution_id=event.execution_id,
            handler_count=len(handlers),
        )

        outcomes = await asyncio.gather(
            *(handler(event) for handler in handlers), return_exceptions=True
        )
        for handler, outcome in zip(handlers, outcomes, strict=True):
            if isinstance(outcome, Exception):
                logger.error(
                    "event_handler_error",
                    event_type=event_type,
                    execution_id=event.execution_id,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )

    def handler_count(self) -> int:
        """Number of registered subscriptions across every scope."""
        return sum(len(handlers) for handlers in self._routes.values())

    def clear(self) -> None:
        """Drop every subscription."""
        self._routes.clear()

    def _add(self, key: tuple[str, str], handler: EventHandler) -> None:
        self._routes.setdefault(key, []).append(handler)
        logger.debug("event_handler_subscribed", scope=key[0], key=key[1])

    def _remove(self, key: tuple[str, str], handler: EventHandler) -> bool:
        handlers = self._routes.get(key)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._routes[key]
        return True
