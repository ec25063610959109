"""Logging event handler for observability."""

from __future__ import annotations

import structlog

from ensemble.events.types import Event, EventType

logger = structlog.get_logger()

_ERROR_EVENTS = frozenset(
    {
        EventType.WORKFLOW_FAILED,
        EventType.STEP_FAILED,
        EventType.ORCHESTRATION_FAILED,
        EventType.DISCUSSION_ERROR,
        EventType.CRITIQUE_ERROR,
    }
)

_INFO_EVENTS = frozenset(
    {
        EventType.WORKFLOW_STARTED,
        EventType.WORKFLOW_COMPLETED,
        EventType.WORKFLOW_CANCELLED,
        EventType.WORKFLOW_PAUSED,
        EventType.WORKFLOW_RESUMED,
        EventType.ORCHESTRATION_COMPLETED,
        EventType.DISCUSSION_CONVERGED,
        EventType.DISCUSSION_COMPLETED,
        EventType.CRITIQUE_CONVERGED,
        EventType.CRITIQUE_COMPLETED,
    }
)

_WARNING_EVENTS = frozenset(
    {
        EventType.STEP_RETRY,
        EventType.STEP_SKIPPED,
        EventType.CRITIQUE_MAX_ITERATIONS,
    }
)

_EXTRA_FIELDS = (
    "workflow_id",
    "step_id",
    "agent",
    "attempt",
    "status",
    "pattern",
    "round",
    "participant_id",
    "iteration",
    "consensus_score",
    "overall_score",
    "score",
    "converged",
    "progress",
)


class LoggingEventHandler:
    """Logs all events with a level derived from the event type.

    Register with ``bus.subscribe_all(handler.handle)``.
    """

    def __init__(self, log_level: str = "debug") -> None:
        """Initialize logging handler.

        Args:
            log_level: Level for events without a specific mapping
        """
        self.log_level = log_level

    async def handle(self, event: Event) -> None:
        log_data: dict[str, object] = {
            "event_type": str(event.type),
            "execution_id": event.execution_id,
            "timestamp": event.timestamp.isoformat(),
        }
        log_data.update(self._extract_extra_fields(event))

        level = self._get_log_level(EventType(event.type))
        if level == "error":
            logger.error("event_logged", **log_data)
        elif level == "warning":
            logger.warning("event_logged", **log_data)
        elif level == "info":
            logger.info("event_logged", **log_data)
        else:
            logger.debug("event_logged", **log_data)

    def _get_log_level(self, event_type: EventType) -> str:
        if event_type in _ERROR_EVENTS:
            return "error"
        if event_type in _INFO_EVENTS:
            return "info"
        if event_type in _WARNING_EVENTS:
            return "warning"
        return self.log_level

    def _extract_extra_fields(self, event: Event) -> dict[str, object]:
        extra: dict[str, object] = {}
        for name in _EXTRA_FIELDS:
            if (value := getattr(event, name, None)) is not None:
                extra[name] = value
        if (error := getattr(event, "error", None)) is not None:
            # Truncate long messages
            extra["error"] = error[:200] if len(error) > 200 else error
        return extra
