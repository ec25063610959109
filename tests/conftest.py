"""
Pytest configuration and fixtures
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

import pytest

from ensemble.agents.invoker import AgentInput, AgentResult, InvocationOptions
from ensemble.config import (
    ContextSettings,
    CritiqueSettings,
    DiscussionSettings,
    OrchestrationSettings,
    WorkflowEngineSettings,
)
from ensemble.context.store import InMemoryContextStore
from ensemble.events.bus import EventBus
from ensemble.events.types import Event
from ensemble.metrics import MetricsRecorder
from ensemble.prompts import PromptManager
from ensemble.state.store import InMemoryStateStore
from ensemble.templates.resolver import TemplateRegistry


class ScriptedInvoker:
    """Agent invoker replaying scripted outputs per agent reference.

    The last scripted output repeats once the script runs out. An exception
    in a script becomes a failed result, like a real backend reports it.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, AgentInput]] = []
        self._scripts: dict[str, list[Any]] = {}
        self._handlers: dict[str, Callable[[AgentInput], Any]] = {}

    def script(self, ref: str, *outputs: Any) -> None:
        self._scripts[ref] = list(outputs)

    def on(self, ref: str, handler: Callable[[AgentInput], Any]) -> None:
        self._handlers[ref] = handler

    def calls_for(self, ref: str) -> list[AgentInput]:
        return [agent_input for called, agent_input in self.calls if called == ref]

    async def execute(
        self,
        ref: str,
        agent_input: AgentInput,
        options: InvocationOptions | None = None,
    ) -> AgentResult:
        self.calls.append((ref, agent_input))

        if ref in self._handlers:
            try:
                output = self._handlers[ref](agent_input)
                if inspect.isawaitable(output):
                    output = await output
            except Exception as e:
                return AgentResult(success=False, error=str(e))
            return AgentResult(success=True, result=output, duration_ms=1.0)

        script = self._scripts.get(ref)
        if script is None:
            return AgentResult(success=True, result=f"{ref} output", duration_ms=1.0)

        output = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(output, Exception):
            return AgentResult(success=False, error=str(output), duration_ms=1.0)
        return AgentResult(success=True, result=output, duration_ms=1.0)


@pytest.fixture
def invoker() -> ScriptedInvoker:
    """Scripted agent invoker"""
    return ScriptedInvoker()


@pytest.fixture
def context_store() -> InMemoryContextStore:
    """In-memory context store"""
    return InMemoryContextStore(ContextSettings())


@pytest.fixture
def state_store() -> InMemoryStateStore:
    """In-memory state store"""
    return InMemoryStateStore()


@pytest.fixture
def templates() -> TemplateRegistry:
    """Empty template registry"""
    return TemplateRegistry()


@pytest.fixture
def event_bus() -> EventBus:
    """Fresh event bus"""
    return EventBus()


@pytest.fixture
def events(event_bus: EventBus) -> list[Event]:
    """Every event emitted on the bus, in emission order"""
    received: list[Event] = []

    async def record(event: Event) -> None:
        received.append(event)

    event_bus.subscribe_all(record)
    return received


@pytest.fixture
def metrics() -> MetricsRecorder:
    """Metrics recorder on a private registry"""
    return MetricsRecorder()


@pytest.fixture
def prompts() -> PromptManager:
    """Prompt manager over the packaged YAML files"""
    return PromptManager()


@pytest.fixture
def workflow_settings() -> WorkflowEngineSettings:
    """Engine settings with a fast dequeue loop"""
    return WorkflowEngineSettings(
        max_concurrent_workflows=2,
        max_queue_size=2,
        queue_poll_interval_ms=10,
        default_initial_delay_ms=1000,
    )


@pytest.fixture
def orchestration_settings() -> OrchestrationSettings:
    """Orchestration settings"""
    return OrchestrationSettings()


@pytest.fixture
def discussion_settings() -> DiscussionSettings:
    """Discussion settings"""
    return DiscussionSettings()


@pytest.fixture
def critique_settings() -> CritiqueSettings:
    """Self-critique settings"""
    return CritiqueSettings()


@pytest.fixture
def sleeps() -> list[float]:
    """Backoff delays requested by the scheduler, in seconds"""
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]) -> Callable[[float], Any]:
    """Sleep replacement that records delays and only yields to the loop"""

    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)
        await asyncio.sleep(0)

    return sleep
