"""Lifecycle event stream."""

from .bus import EventBus, EventHandler
from .types import (
    ContributionEvent,
    Event,
    EventType,
    IterationEvent,
    OrchestrationEvent,
    ProtocolEvent,
    RoundEvent,
    StepEvent,
    WorkflowEvent,
)

__all__ = [
    "ContributionEvent",
    "Event",
    "EventBus",
    "EventHandler",
    "EventType",
    "IterationEvent",
    "OrchestrationEvent",
    "ProtocolEvent",
    "RoundEvent",
    "StepEvent",
    "WorkflowEvent",
]
