"""Tests for the workflow scheduler."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from ensemble.agents.invoker import AgentInput
from ensemble.config import WorkflowEngineSettings
from ensemble.context.store import InMemoryContextStore
from ensemble.events.bus import EventBus
from ensemble.events.types import Event, EventType
from ensemble.exceptions import (
    CapacityError,
    DependencyError,
    NotFoundError,
    StateError,
    ValidationError,
)
from ensemble.metrics import MetricsRecorder
from ensemble.state.store import InMemoryStateStore
from ensemble.templates.resolver import PromptTemplate, TemplateRegistry, TemplateVariable
from ensemble.workflow.models import (
    RetryPolicy,
    StepInput,
    StepOutput,
    StepState,
    StepStatus,
    WorkflowDefinition,
    WorkflowExecutionState,
    WorkflowStatus,
    WorkflowStep,
)
from ensemble.workflow.scheduler import WorkflowScheduler

NO_RETRY = RetryPolicy(max_retries=0)


def _step(step_id: str, *deps: str, agent: str = "writer", **kwargs: Any) -> WorkflowStep:
    fields: dict[str, Any] = {"prompt": f"Do {step_id}"}
    fields.update(kwargs)
    return WorkflowStep(id=step_id, agent=agent, dependencies=list(deps), **fields)


def _definition(*steps: WorkflowStep, **kwargs: Any) -> WorkflowDefinition:
    return WorkflowDefinition(id="wf", name="Test workflow", steps=list(steps), **kwargs)


class Gate:
    """Agent handler that blocks until released."""

    def __init__(self, output: Any = "gated output") -> None:
        self.output = output
        self.entered = asyncio.Event()
        self.released = asyncio.Event()

    async def __call__(self, agent_input: AgentInput) -> Any:
        self.entered.set()
        await self.released.wait()
        return self.output


@pytest.fixture
def scheduler(
    invoker: Any,
    context_store: InMemoryContextStore,
    state_store: InMemoryStateStore,
    templates: TemplateRegistry,
    event_bus: EventBus,
    metrics: MetricsRecorder,
    workflow_settings: WorkflowEngineSettings,
    fake_sleep: Any,
) -> WorkflowScheduler:
    """Create a scheduler over in-memory stores."""
    return WorkflowScheduler(
        invoker,
        context_store,
        state_store,
        templates,
        event_bus=event_bus,
        metrics=metrics,
        settings=workflow_settings,
        sleep=fake_sleep,
    )


class TestSubmit:
    """Tests for admission and validation."""

    async def test_invalid_definition_rejected(self, scheduler: WorkflowScheduler) -> None:
        with pytest.raises(ValidationError):
            await scheduler.submit(_definition(), user_id="u1")

    async def test_cycle_rejected(
        self, scheduler: WorkflowScheduler, state_store: InMemoryStateStore
    ) -> None:
        """A cyclic definition never starts."""
        with pytest.raises(DependencyError):
            await scheduler.submit(_definition(_step("a", "b"), _step("b", "a")), user_id="u1")
        assert await state_store.list_states() == []

    async def test_runs_in_dependency_order(
        self, scheduler: WorkflowScheduler, invoker: Any
    ) -> None:
        """Each step sees the outputs of its dependencies in its prompt."""
        invoker.script("researcher", "facts")
        invoker.script("critic", "notes")
        definition = _definition(
            _step("research", agent="researcher", prompt="Research {{ topic }}"),
            _step("review", "research", agent="critic", prompt="Review {{ research }}"),
            _step("outline", "research", agent="writer", prompt="Outline {{ research }}"),
            _step(
                "draft",
                "review",
                "outline",
                agent="writer",
                prompt="Draft from {{ review }} and {{ outline }}",
            ),
        )

        async with scheduler:
            state = await scheduler.submit(definition, "u1", initial_context={"topic": "bees"})
            final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.status == WorkflowStatus.COMPLETED
        assert final.progress == 100
        refs = [ref for ref, _ in invoker.calls]
        assert refs[0] == "researcher"
        assert invoker.calls[-1][1].prompt == "Draft from notes and writer output"
        assert invoker.calls_for("researcher")[0].prompt == "Research bees"
        assert final.steps["draft"].result == "writer output"

    async def test_template_step(
        self, scheduler: WorkflowScheduler, invoker: Any, templates: TemplateRegistry
    ) -> None:
        """Registered templates resolve with declared defaults."""
        templates.register(
            PromptTemplate(
                id="greet",
                content="Hello {{ name }} in {{ language }}",
                variables=[
                    TemplateVariable(name="name"),
                    TemplateVariable(name="language", required=False, default="English"),
                ],
            )
        )
        definition = _definition(_step("a", prompt=None, prompt_template_id="greet"))

        state = await scheduler.submit(definition, "u1", initial_context={"name": "Ada"})
        await scheduler.wait(state.execution_id, timeout=5)

        assert invoker.calls[0][1].prompt == "Hello Ada in English"


class TestFailures:
    """Tests for retries, failure propagation and timeouts."""

    async def test_failure_skips_dependents(
        self, scheduler: WorkflowScheduler, invoker: Any, events: list[Event]
    ) -> None:
        invoker.script("broken", RuntimeError("model unavailable"))
        definition = _definition(
            _step("a"),
            _step("b", "a", agent="broken"),
            _step("c", "a"),
            _step("d", "b", "c"),
            default_retry_policy=NO_RETRY,
        )

        state = await scheduler.submit(definition, "u1")
        final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.status == WorkflowStatus.FAILED
        assert final.error == "Step 'b' failed: model unavailable"
        assert final.steps["c"].status == StepStatus.COMPLETED
        assert final.steps["d"].status == StepStatus.SKIPPED
        assert final.steps["d"].error == "Skipped: dependency 'b' failed"
        assert [ref for ref, _ in invoker.calls].count("writer") == 2

        types = [event.type for event in events]
        assert EventType.STEP_SKIPPED in types
        assert types[-1] == EventType.WORKFLOW_FAILED

    async def test_retries_with_backoff(
        self,
        scheduler: WorkflowScheduler,
        invoker: Any,
        sleeps: list[float],
        metrics: MetricsRecorder,
    ) -> None:
        invoker.script("flaky", RuntimeError("busy"), RuntimeError("busy"), "ok")
        definition = _definition(
            _step("a", agent="flaky", retry_policy=RetryPolicy(max_retries=3))
        )

        state = await scheduler.submit(definition, "u1")
        final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.status == WorkflowStatus.COMPLETED
        assert final.steps["a"].attempts == 3
        assert final.steps["a"].retry_count == 2
        assert sleeps == [1.0, 2.0]
        assert metrics.summary()["steps"]["retries"] == 2

    async def test_missing_variable_fails_without_retry(
        self, scheduler: WorkflowScheduler, invoker: Any, sleeps: list[float]
    ) -> None:
        definition = _definition(_step("a", prompt="Use {{ missing }}"))

        state = await scheduler.submit(definition, "u1")
        final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.status == WorkflowStatus.FAILED
        assert final.steps["a"].attempts == 1
        assert "Missing required variable: missing" in (final.steps["a"].error or "")
        assert invoker.calls == []
        assert sleeps == []

    async def test_workflow_timeout(self, scheduler: WorkflowScheduler, invoker: Any) -> None:
        async def slow(agent_input: AgentInput) -> str:
            await asyncio.sleep(5)
            return "late"

        invoker.on("slow", slow)
        definition = _definition(
            _step("a", agent="slow"),
            _step("b", "a"),
            timeout_ms=50,
            default_retry_policy=NO_RETRY,
        )

        state = await scheduler.submit(definition, "u1")
        final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.status == WorkflowStatus.FAILED
        assert "timed out" in (final.steps["a"].error or "")
        assert final.steps["b"].status == StepStatus.SKIPPED


class TestControl:
    """Tests for pause, resume and cancel."""

    async def test_pause_and_resume(
        self, scheduler: WorkflowScheduler, invoker: Any, context_store: InMemoryContextStore
    ) -> None:
        """In-flight steps finish while paused; dependents wait for resume."""
        gate = Gate("first")
        invoker.on("slow", gate)
        definition = _definition(_step("a", agent="slow"), _step("b", "a"))

        state = await scheduler.submit(definition, "u1")
        await gate.entered.wait()

        paused = await scheduler.pause(state.execution_id)
        assert paused.status == WorkflowStatus.PAUSED
        assert len(await context_store.list_snapshots(state.execution_id)) == 1

        gate.released.set()
        await asyncio.sleep(0.05)

        status = await scheduler.get_status(state.execution_id)
        assert status.status == WorkflowStatus.PAUSED
        assert status.steps["a"].status == StepStatus.COMPLETED
        assert status.steps["b"].status == StepStatus.PENDING
        assert invoker.calls_for("writer") == []

        with pytest.raises(StateError):
            await scheduler.pause(state.execution_id)

        await scheduler.resume(state.execution_id)
        final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.status == WorkflowStatus.COMPLETED
        assert invoker.calls_for("writer")[0].prompt == "Do b"

    async def test_resume_requires_paused(
        self, scheduler: WorkflowScheduler, invoker: Any
    ) -> None:
        gate = Gate()
        invoker.on("slow", gate)
        state = await scheduler.submit(_definition(_step("a", agent="slow")), "u1")
        await gate.entered.wait()

        with pytest.raises(StateError):
            await scheduler.resume(state.execution_id)

        gate.released.set()
        await scheduler.wait(state.execution_id, timeout=5)

    async def test_cancel_running(
        self, scheduler: WorkflowScheduler, invoker: Any, events: list[Event]
    ) -> None:
        """Pending steps are cancelled; the in-flight step keeps its result."""
        gate = Gate("kept")
        invoker.on("slow", gate)
        definition = _definition(_step("a", agent="slow"), _step("b", "a"))

        state = await scheduler.submit(definition, "u1")
        await gate.entered.wait()

        cancelled = await scheduler.cancel(state.execution_id)
        assert cancelled.status == WorkflowStatus.CANCELLED
        assert cancelled.steps["b"].status == StepStatus.CANCELLED

        gate.released.set()
        final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.status == WorkflowStatus.CANCELLED
        assert final.steps["a"].result == "kept"
        assert invoker.calls_for("writer") == []
        assert EventType.WORKFLOW_CANCELLED in [event.type for event in events]

        with pytest.raises(StateError):
            await scheduler.cancel(state.execution_id)

    async def test_unknown_execution(self, scheduler: WorkflowScheduler) -> None:
        with pytest.raises(NotFoundError):
            await scheduler.get_status("missing")
        with pytest.raises(NotFoundError):
            await scheduler.pause("missing")


class TestQueue:
    """Tests for concurrency limits and the wait queue."""

    async def test_queue_then_capacity_error(
        self, scheduler: WorkflowScheduler, invoker: Any
    ) -> None:
        gate = Gate()
        invoker.on("slow", gate)
        definition = _definition(_step("a", agent="slow"))

        async with scheduler:
            running = [await scheduler.submit(definition, "u1") for _ in range(2)]
            queued = [await scheduler.submit(definition, "u1") for _ in range(2)]

            assert all(s.status == WorkflowStatus.RUNNING for s in running)
            assert [s.status for s in queued] == [WorkflowStatus.QUEUED] * 2
            assert [s.queue_position for s in queued] == [1, 2]
            assert scheduler.stats().queued == 2

            with pytest.raises(CapacityError):
                await scheduler.submit(definition, "u1")

            gate.released.set()
            finals = [
                await scheduler.wait(s.execution_id, timeout=5) for s in [*running, *queued]
            ]

        assert all(f.status == WorkflowStatus.COMPLETED for f in finals)
        assert scheduler.stats().active == 0

    async def test_cancel_queued(self, scheduler: WorkflowScheduler, invoker: Any) -> None:
        gate = Gate()
        invoker.on("slow", gate)
        definition = _definition(_step("a", agent="slow"))

        for _ in range(2):
            await scheduler.submit(definition, "u1")
        first = await scheduler.submit(definition, "u1")
        second = await scheduler.submit(definition, "u1")

        cancelled = await scheduler.cancel(first.execution_id)

        assert cancelled.status == WorkflowStatus.CANCELLED
        assert (await scheduler.get_status(second.execution_id)).queue_position == 1

        gate.released.set()
        await scheduler.wait(second.execution_id, timeout=5)


class TestQueries:
    """Tests for status queries and listing."""

    async def test_get_status_is_idempotent(self, scheduler: WorkflowScheduler) -> None:
        state = await scheduler.submit(_definition(_step("a")), "u1")
        await scheduler.wait(state.execution_id, timeout=5)

        first = await scheduler.get_status(state.execution_id)
        second = await scheduler.get_status(state.execution_id)

        assert first == second

    async def test_list_executions(self, scheduler: WorkflowScheduler) -> None:
        ids = []
        for user in ("u1", "u1", "u1", "u2"):
            state = await scheduler.submit(_definition(_step("a")), user)
            await scheduler.wait(state.execution_id, timeout=5)
            ids.append(state.execution_id)

        page = await scheduler.list_executions("u1", page=1, page_size=2)
        assert page.total == 3
        assert len(page.items) == 2
        assert page.items[0].execution_id == ids[2]

        failed = await scheduler.list_executions("u1", status=WorkflowStatus.FAILED)
        assert failed.total == 0


class TestRecover:
    """Tests for rebuilding executions from persisted state."""

    async def test_recover_running_execution(
        self, scheduler: WorkflowScheduler, state_store: InMemoryStateStore, invoker: Any
    ) -> None:
        """Interrupted steps rerun with the completed outputs back in context."""
        definition = _definition(_step("a"), _step("b", "a", prompt="Continue from {{ a }}"))
        state = WorkflowExecutionState(
            execution_id="exec-1",
            workflow_id="wf",
            user_id="u1",
            status=WorkflowStatus.RUNNING,
            steps={
                "a": StepState(step_id="a", status=StepStatus.COMPLETED, result="saved"),
                "b": StepState(step_id="b", status=StepStatus.RUNNING),
            },
            in_flight=["b"],
        )
        await state_store.save_definition("exec-1", definition)
        await state_store.save_state(state)

        recovered = await scheduler.recover()
        final = await scheduler.wait("exec-1", timeout=5)

        assert recovered == ["exec-1"]
        assert final.status == WorkflowStatus.COMPLETED
        assert [agent_input.prompt for _, agent_input in invoker.calls] == ["Continue from saved"]

    async def test_recover_without_definition(
        self, scheduler: WorkflowScheduler, state_store: InMemoryStateStore
    ) -> None:
        await state_store.save_state(
            WorkflowExecutionState(
                execution_id="orphan",
                workflow_id="wf",
                user_id="u1",
                status=WorkflowStatus.RUNNING,
            )
        )

        assert await scheduler.recover() == []
        orphan = await scheduler.get_status("orphan")
        assert orphan.status == WorkflowStatus.FAILED
        assert orphan.error == "Workflow definition missing during recovery"


class TestContextLifetime:
    """Tests for the execution context across pauses and completion."""

    async def test_resume_rebuilds_expired_context(
        self,
        scheduler: WorkflowScheduler,
        invoker: Any,
        context_store: InMemoryContextStore,
        workflow_settings: WorkflowEngineSettings,
    ) -> None:
        """Upstream outputs and their mappings survive a pause that outlives the context."""
        gate = Gate("first")
        invoker.on("slow", gate)
        definition = _definition(
            _step("a", agent="slow", outputs=[StepOutput(context_path="notes.first")]),
            _step("b", "a", prompt="Continue {{ a }} / {{ notes.first }}"),
        )

        state = await scheduler.submit(definition, "u1")
        await gate.entered.wait()
        await scheduler.pause(state.execution_id)
        gate.released.set()
        await asyncio.sleep(0.05)

        context = await context_store.get(state.execution_id)
        assert context is not None
        lifetime = (context.expires_at - context.created_at).total_seconds()
        assert lifetime == pytest.approx(workflow_settings.state_ttl_seconds, abs=1)

        assert await context_store.clear(state.execution_id) is True
        await scheduler.resume(state.execution_id)
        final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.status == WorkflowStatus.COMPLETED
        assert invoker.calls_for("writer")[0].prompt == "Continue first / first"

    async def test_finished_executions_release_bookkeeping(
        self,
        scheduler: WorkflowScheduler,
        invoker: Any,
        context_store: InMemoryContextStore,
    ) -> None:
        """Completed, failed and cancelled executions leave no context behind."""
        invoker.script("broken", RuntimeError("model unavailable"))
        gate = Gate()
        invoker.on("slow", gate)

        ids = []
        for definition in (
            _definition(_step("a"), _step("b", "a")),
            _definition(_step("a", agent="broken"), default_retry_policy=NO_RETRY),
        ):
            state = await scheduler.submit(definition, "u1")
            await scheduler.wait(state.execution_id, timeout=5)
            ids.append(state.execution_id)

        state = await scheduler.submit(_definition(_step("a", agent="slow"), _step("b", "a")), "u1")
        await gate.entered.wait()
        await scheduler.cancel(state.execution_id)
        gate.released.set()
        await scheduler.wait(state.execution_id, timeout=5)
        ids.append(state.execution_id)

        assert context_store._contexts == {}
        assert scheduler._done == {}
        statuses = [(await scheduler.wait(execution_id)).status for execution_id in ids]
        assert statuses == [
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        ]


class TestStepOptions:
    """Tests for conditions, error tolerance and input/output mappings."""

    async def test_condition_skips_step(
        self, scheduler: WorkflowScheduler, invoker: Any, events: list[Event]
    ) -> None:
        """A false condition skips the step; its dependents still run."""
        definition = _definition(
            _step("gold", condition="context.tier == 'gold'", prompt="Upsell"),
            _step("free", condition="context.tier == 'free'", prompt="Welcome"),
            _step("wrap", "gold", "free", prompt="Wrap up"),
        )

        state = await scheduler.submit(definition, "u1", initial_context={"tier": "free"})
        final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.status == WorkflowStatus.COMPLETED
        assert final.steps["gold"].status == StepStatus.SKIPPED
        assert final.steps["gold"].error == "Skipped: condition not met"
        assert final.steps["free"].status == StepStatus.COMPLETED
        assert final.steps["wrap"].status == StepStatus.COMPLETED
        assert [agent_input.prompt for agent_input in invoker.calls_for("writer")] == [
            "Welcome",
            "Wrap up",
        ]
        skipped = [e for e in events if e.type == EventType.STEP_SKIPPED]
        assert [e.step_id for e in skipped] == ["gold"]

    async def test_condition_reads_upstream_output(
        self, scheduler: WorkflowScheduler, invoker: Any
    ) -> None:
        invoker.script("classifier", "spam")
        definition = _definition(
            _step("classify", agent="classifier"),
            _step("reply", "classify", condition='context.classify != "spam"'),
        )

        state = await scheduler.submit(definition, "u1")
        final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.steps["reply"].status == StepStatus.SKIPPED
        assert invoker.calls_for("writer") == []

    async def test_continue_on_error_runs_dependents(
        self, scheduler: WorkflowScheduler, invoker: Any
    ) -> None:
        """Dependents of a tolerated failure run; the workflow still reports the failure."""
        invoker.script("broken", RuntimeError("model unavailable"))
        definition = _definition(
            _step("a", agent="broken", continue_on_error=True),
            _step("b", "a", prompt="Carry on"),
            default_retry_policy=NO_RETRY,
        )

        state = await scheduler.submit(definition, "u1")
        final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.status == WorkflowStatus.FAILED
        assert final.error == "Step 'a' failed: model unavailable"
        assert final.steps["b"].status == StepStatus.COMPLETED
        assert invoker.calls_for("writer")[0].prompt == "Carry on"

    async def test_input_and_output_mappings(
        self, scheduler: WorkflowScheduler, invoker: Any
    ) -> None:
        invoker.script("researcher", {"summary": "short", "sources": ["x"]})
        invoker.script("titler", "Bees")
        definition = _definition(
            _step(
                "research",
                agent="researcher",
                outputs=[
                    StepOutput(context_path="findings.summary", field="summary"),
                    StepOutput(context_path="raw", field="missing"),
                ],
            ),
            _step("title", agent="titler"),
            _step(
                "write",
                "research",
                "title",
                prompt="Write {{ heading }}: {{ brief }} for {{ audience }}",
                condition='context.raw.sources[0] == "x"',
                inputs=[
                    StepInput(variable="brief", source="context", value="findings.summary"),
                    StepInput(variable="audience", source="literal", value="kids"),
                    StepInput(variable="heading", source="step", step_id="title"),
                ],
            ),
        )

        state = await scheduler.submit(definition, "u1")
        final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.status == WorkflowStatus.COMPLETED
        assert invoker.calls_for("writer")[0].prompt == "Write Bees: short for kids"

    async def test_invalid_options_rejected(self, scheduler: WorkflowScheduler) -> None:
        definition = _definition(
            _step("a"),
            _step(
                "b",
                condition="context.x ==",
                inputs=[StepInput(variable="v", source="step", step_id="a")],
            ),
        )

        with pytest.raises(ValidationError) as exc_info:
            await scheduler.submit(definition, "u1")
        errors = exc_info.value.errors
        assert any("invalid condition" in error for error in errors)
        assert any("not one of its dependencies" in error for error in errors)


class TestStepParallelism:
    """Tests for the per-level step limit."""

    @pytest.mark.parametrize(
        ("settings_update", "definition_limit", "expected_peak"),
        [
            ({"max_parallel_steps": 3}, None, 3),
            ({"max_parallel_steps": 3}, 2, 2),
            ({"max_parallel_steps": 3, "enable_parallel_execution": False}, None, 1),
        ],
    )
    async def test_level_concurrency_bounded(
        self,
        invoker: Any,
        context_store: InMemoryContextStore,
        state_store: InMemoryStateStore,
        templates: TemplateRegistry,
        workflow_settings: WorkflowEngineSettings,
        settings_update: dict[str, Any],
        definition_limit: int | None,
        expected_peak: int,
    ) -> None:
        active = 0
        peak = 0

        async def worker(agent_input: AgentInput) -> str:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return agent_input.prompt

        invoker.on("worker", worker)
        scheduler = WorkflowScheduler(
            invoker,
            context_store,
            state_store,
            templates,
            settings=workflow_settings.model_copy(update=settings_update),
        )
        definition = _definition(
            *(_step(f"s{i}", agent="worker") for i in range(5)),
            max_parallel_steps=definition_limit,
        )

        state = await scheduler.submit(definition, "u1")
        final = await scheduler.wait(state.execution_id, timeout=5)

        assert final.status == WorkflowStatus.COMPLETED
        assert peak == expected_peak
        assert final.steps["s4"].result == "Do s4"


class TestQueuedSubmit:
    """Tests for submits promoted while they are still being admitted."""

    async def test_promoted_submit_not_reported_queued(
        self,
        invoker: Any,
        context_store: InMemoryContextStore,
        state_store: InMemoryStateStore,
        templates: TemplateRegistry,
        event_bus: EventBus,
        events: list[Event],
        workflow_settings: WorkflowEngineSettings,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        scheduler = WorkflowScheduler(
            invoker,
            context_store,
            state_store,
            templates,
            event_bus=event_bus,
            settings=workflow_settings.model_copy(update={"max_concurrent_workflows": 1}),
        )
        gate = Gate()
        invoker.on("slow", gate)
        definition = _definition(_step("a", agent="slow"))
        first = await scheduler.submit(definition, "u1")
        save_definition = state_store.save_definition

        async def finish_first_meanwhile(execution_id: str, stored: WorkflowDefinition) -> None:
            await save_definition(execution_id, stored)
            gate.released.set()
            await scheduler.wait(first.execution_id, timeout=5)
            await asyncio.sleep(0.01)

        monkeypatch.setattr(state_store, "save_definition", finish_first_meanwhile)
        second = await scheduler.submit(definition, "u1")
        final = await scheduler.wait(second.execution_id, timeout=5)

        assert second.status != WorkflowStatus.QUEUED
        second_events = [e.type for e in events if e.execution_id == second.execution_id]
        assert EventType.WORKFLOW_QUEUED not in second_events
        assert second_events[0] == EventType.WORKFLOW_STARTED
        assert final.status == WorkflowStatus.COMPLETED
