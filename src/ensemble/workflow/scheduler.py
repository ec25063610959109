"""Workflow scheduler.

Admits workflow executions under a concurrency limit, runs their steps
level by level through the dependency graph, and drives the execution
state machine:

    pending -> queued -> running <-> paused -> completed | failed | cancelled

Every transition is written to the state store before the next step is
launched, so an execution can be rebuilt from stored state after a restart.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog

from ensemble.agents.invoker import AgentInput, AgentInvoker, invoke_agent
from ensemble.config import WorkflowEngineSettings, get_workflow_settings
from ensemble.context import paths
from ensemble.context.store import ContextStore
from ensemble.events.bus import EventBus
from ensemble.events.types import Event, EventType, StepEvent, WorkflowEvent
from ensemble.exceptions import (
    AgentInvocationError,
    CapacityError,
    EnsembleError,
    NotFoundError,
    OperationTimeoutError,
    StateError,
    TemplateError,
)
from ensemble.metrics import MetricsRecorder
from ensemble.orchestration.conditions import evaluate_condition
from ensemble.templates.resolver import TemplateResolver

from .graph import DependencyGraph
from .models import (
    EngineStats,
    RetryPolicy,
    StepState,
    StepStatus,
    WorkflowDefinition,
    WorkflowExecutionState,
    WorkflowPage,
    WorkflowStatus,
    WorkflowStep,
)
from .retry import RETRYABLE_ERRORS, SleepFn, build_retrying
from .validator import DAGValidator

if TYPE_CHECKING:
    from ensemble.state.store import StateStore

logger = structlog.get_logger()

_UNBOUND = object()


def _mapped_outputs(step: WorkflowStep, output: Any) -> list[tuple[str, Any]]:
    """Context writes for a step's output mappings.

    A mapping with a field takes that field of a dict result; a missing
    field, or a result that is not a dict, maps the whole result.
    """
    writes: list[tuple[str, Any]] = []
    for mapping in step.outputs:
        value = output
        if mapping.field and isinstance(output, dict):
            picked = paths.get_path(output, mapping.field, _UNBOUND)
            if picked is not _UNBOUND:
                value = picked
        writes.append((mapping.context_path, value))
    return writes


class _RetryAborted(Exception):
    """Raised instead of a retry when the execution was cancelled or ran out of time."""

    def __init__(self, message: str, cancelled: bool) -> None:
        super().__init__(message)
        self.cancelled = cancelled


@dataclass
class _ActiveExecution:
    """Runtime bookkeeping of one running or paused execution."""

    definition: WorkflowDefinition
    state: WorkflowExecutionState
    graph: DependencyGraph
    deadline: float
    timeout_ms: int
    resume_gate: asyncio.Event = field(default_factory=asyncio.Event)
    cancelled: bool = False
    paused_at: float | None = None
    task: asyncio.Task[None] | None = None

    @property
    def execution_id(self) -> str:
        return self.state.execution_id


class WorkflowScheduler:
    """DAG workflow engine with bounded concurrency and persisted state.

    Example:
        >>> scheduler = WorkflowScheduler(invoker, contexts, states, templates)
        >>> async with scheduler:
        ...     state = await scheduler.submit(definition, user_id="u1")
        ...     final = await scheduler.wait(state.execution_id)
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        context_store: ContextStore,
        state_store: StateStore,
        templates: TemplateResolver,
        event_bus: EventBus | None = None,
        metrics: MetricsRecorder | None = None,
        settings: WorkflowEngineSettings | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        """Initialize scheduler.

        Args:
            invoker: Agent invoker used for every step
            context_store: Per-execution context tree
            state_store: Durable execution state
            templates: Prompt template resolver
            event_bus: Optional lifecycle event bus
            metrics: Optional metrics recorder
            settings: Engine settings, defaults to WORKFLOW_* environment
            sleep: Coroutine used for retry backoff, in seconds
        """
        self.invoker = invoker
        self.context_store = context_store
        self.state_store = state_store
        self.templates = templates
        self.event_bus = event_bus
        self.metrics = metrics
        self.settings = settings or get_workflow_settings()
        self.validator = DAGValidator(
            max_steps=self.settings.max_workflow_steps,
            template_exists=templates.has_template,
        )
        self._sleep = sleep

        self._active: dict[str, _ActiveExecution] = {}
        self._queue: deque[str] = deque()
        self._queued: dict[str, tuple[WorkflowDefinition, WorkflowExecutionState]] = {}
        self._done: dict[str, asyncio.Event] = {}
        self._wakeup = asyncio.Event()
        self._dequeue_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background dequeue loop."""
        if self._dequeue_task is None or self._dequeue_task.done():
            self._dequeue_task = asyncio.create_task(self._dequeue_loop(), name="workflow-dequeue")
            logger.info(
                "workflow_scheduler_started",
                max_concurrent=self.settings.max_concurrent_workflows,
                max_queue_size=self.settings.max_queue_size,
            )

    async def shutdown(self, wait: bool = True) -> None:
        """Stop the dequeue loop.

        Args:
            wait: Let active executions finish; otherwise cancel their tasks
                and leave their persisted state for ``recover()``
        """
        if self._dequeue_task is not None:
            self._dequeue_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._dequeue_task
            self._dequeue_task = None

        tasks = [h.task for h in self._active.values() if h.task is not None]
        if not wait:
            for task in tasks:
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("workflow_scheduler_stopped", interrupted=0 if wait else len(tasks))

    async def __aenter__(self) -> WorkflowScheduler:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def submit(
        self,
        definition: WorkflowDefinition,
        user_id: str,
        initial_context: dict[str, Any] | None = None,
    ) -> WorkflowExecutionState:
        """Validate and admit a workflow execution.

        Args:
            definition: Workflow definition
            user_id: Owner of the execution
            initial_context: Extra context layered over the definition's

        Returns:
            State right after admission (running or queued)

        Raises:
            ValidationError: If the definition is invalid
            DependencyError: If dependencies are cyclic or dangling
            CapacityError: If the concurrency limit and queue are exhausted
        """
        self.validator.validate(definition).raise_for_errors()

        execution_id = str(uuid4())
        state = WorkflowExecutionState(
            execution_id=execution_id,
            workflow_id=definition.id,
            user_id=user_id,
            steps={step.id: StepState(step_id=step.id) for step in definition.steps},
            initial_context={**definition.initial_context, **(initial_context or {})},
        )

        # Reserve a slot before the first await so concurrent submits cannot overshoot
        if len(self._active) < self.settings.max_concurrent_workflows:
            handle: _ActiveExecution | None = self._register(definition, state)
        elif self.settings.enable_queue and len(self._queue) < self.settings.max_queue_size:
            handle = None
            self._enqueue(definition, state)
        else:
            logger.warning(
                "workflow_rejected_capacity",
                workflow_id=definition.id,
                active=len(self._active),
                queued=len(self._queue),
            )
            raise CapacityError(
                f"Workflow capacity exhausted: {len(self._active)} active, "
                f"{len(self._queue)} queued"
            )

        self._done[execution_id] = asyncio.Event()
        await self.state_store.save_definition(execution_id, definition)

        logger.info(
            "workflow_submitted",
            execution_id=execution_id,
            workflow_id=definition.id,
            user_id=user_id,
            total_steps=len(definition.steps),
        )

        if handle is not None:
            await self._activate(handle)
        elif state.status == WorkflowStatus.QUEUED:
            # Still queued unless the dequeue loop promoted it during the awaits above
            await self._persist(state)
            if state.status == WorkflowStatus.QUEUED:
                await self._emit_workflow(EventType.WORKFLOW_QUEUED, definition, state)

        return state.model_copy(deep=True)

    async def get_status(self, execution_id: str) -> WorkflowExecutionState:
        """Load the persisted state of an execution.

        Raises:
            NotFoundError: If the execution is unknown
        """
        state = await self.state_store.load_state(execution_id)
        if state is None:
            raise NotFoundError("Workflow execution", execution_id)
        return state

    async def list_executions(
        self,
        user_id: str,
        status: WorkflowStatus | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> WorkflowPage:
        """List a user's executions, newest first."""
        states = await self.state_store.list_states(user_id)
        if status is not None:
            states = [s for s in states if s.status == status]
        states.sort(key=lambda s: s.created_at, reverse=True)

        page = max(page, 1)
        start = (page - 1) * page_size
        return WorkflowPage(
            items=states[start : start + page_size],
            total=len(states),
            page=page,
            page_size=page_size,
        )

    async def pause(self, execution_id: str) -> WorkflowExecutionState:
        """Stop launching new steps; in-flight steps run to completion.

        Raises:
            NotFoundError: If the execution is unknown
            StateError: If the execution is not running
        """
        handle = await self._require_active(execution_id, "pause")
        state = handle.state
        if state.status != WorkflowStatus.RUNNING:
            raise StateError("workflow", state.status, "pause")

        handle.resume_gate.clear()
        handle.paused_at = asyncio.get_running_loop().time()
        state.status = WorkflowStatus.PAUSED

        try:
            await self.context_store.snapshot(execution_id, label="pause")
        except NotFoundError:
            logger.debug("workflow_pause_without_context", execution_id=execution_id)

        await self._persist(state)
        await self._emit_workflow(EventType.WORKFLOW_PAUSED, handle.definition, state)
        logger.info("workflow_paused", execution_id=execution_id, in_flight=state.in_flight)
        return state.model_copy(deep=True)

    async def resume(self, execution_id: str) -> WorkflowExecutionState:
        """Continue a paused execution from its first incomplete level.

        Raises:
            NotFoundError: If the execution is unknown
            StateError: If the execution is not paused
        """
        handle = await self._require_active(execution_id, "resume")
        state = handle.state
        if state.status != WorkflowStatus.PAUSED:
            raise StateError("workflow", state.status, "resume")

        loop = asyncio.get_running_loop()
        if handle.paused_at is not None:
            # Time spent paused does not count against the workflow timeout
            handle.deadline += loop.time() - handle.paused_at
            handle.paused_at = None

        await self._ensure_context(handle)

        state.status = WorkflowStatus.RUNNING
        await self._persist(state)
        handle.resume_gate.set()
        await self._emit_workflow(EventType.WORKFLOW_RESUMED, handle.definition, state)
        logger.info("workflow_resumed", execution_id=execution_id)
        return state.model_copy(deep=True)

    async def cancel(self, execution_id: str) -> WorkflowExecutionState:
        """Cancel a queued, running or paused execution.

        Pending steps become cancelled at once; in-flight steps finish and
        keep their results.

        Raises:
            NotFoundError: If the execution is unknown
            StateError: If the execution already reached a terminal status
        """
        if execution_id in self._queued:
            definition, state = self._queued.pop(execution_id)
            self._queue.remove(execution_id)
            self._mark_cancelled(state)
            await self._persist(state)
            await self._emit_workflow(EventType.WORKFLOW_CANCELLED, definition, state)
            self._finish(execution_id)
            await self._refresh_queue_positions()
            if self.metrics:
                self.metrics.record_workflow(str(state.status), 0.0)
            logger.info("workflow_cancelled", execution_id=execution_id, was_queued=True)
            return state.model_copy(deep=True)

        handle = await self._require_active(execution_id, "cancel")
        state = handle.state
        if state.is_terminal:
            raise StateError("workflow", state.status, "cancel")

        handle.cancelled = True
        self._mark_cancelled(state)
        handle.resume_gate.set()

        await self._persist(state)
        await self._emit_workflow(EventType.WORKFLOW_CANCELLED, handle.definition, state)
        logger.info("workflow_cancelled", execution_id=execution_id, in_flight=state.in_flight)
        return state.model_copy(deep=True)

    async def wait(self, execution_id: str, timeout: float | None = None) -> WorkflowExecutionState:
        """Wait until an execution reaches a terminal status.

        Args:
            execution_id: Execution to wait for
            timeout: Seconds to wait, None for no limit

        Raises:
            NotFoundError: If the execution is unknown
            OperationTimeoutError: If the timeout elapses first
        """
        done = self._done.get(execution_id)
        if done is not None:
            try:
                async with asyncio.timeout(timeout):
                    await done.wait()
            except TimeoutError as e:
                raise OperationTimeoutError(
                    f"Waiting for workflow {execution_id}", (timeout or 0) * 1000
                ) from e
        return await self.get_status(execution_id)

    async def recover(self) -> list[str]:
        """Re-admit non-terminal executions found in the state store.

        Steps that were running when the process stopped go back to pending
        and are dispatched again. Paused executions stay paused.

        Returns:
            Recovered execution ids
        """
        recovered: list[str] = []
        for state in await self.state_store.list_states():
            execution_id = state.execution_id
            if state.is_terminal or execution_id in self._active or execution_id in self._queued:
                continue

            definition = await self.state_store.load_definition(execution_id)
            if definition is None:
                state.status = WorkflowStatus.FAILED
                state.error = "Workflow definition missing during recovery"
                state.completed_at = datetime.now(UTC)
                await self._persist(state)
                logger.error("workflow_recovery_failed", execution_id=execution_id)
                continue

            for step_state in state.steps.values():
                if step_state.status == StepStatus.RUNNING:
                    step_state.status = StepStatus.PENDING
                    step_state.started_at = None
            state.in_flight = []
            self._done.setdefault(execution_id, asyncio.Event())

            resumable = state.status in (WorkflowStatus.RUNNING, WorkflowStatus.PAUSED)
            if resumable and len(self._active) < self.settings.max_concurrent_workflows:
                paused = state.status == WorkflowStatus.PAUSED
                handle = self._register(definition, state, paused=paused)
                if paused:
                    await self._persist(state)
                    handle.task = asyncio.create_task(
                        self._run(handle), name=f"workflow-{execution_id}"
                    )
                else:
                    await self._activate(handle)
            else:
                self._enqueue(definition, state)
                await self._persist(state)

            recovered.append(execution_id)

        await self._promote()
        logger.info("workflows_recovered", count=len(recovered))
        return recovered

    def stats(self) -> EngineStats:
        return EngineStats(
            active=len(self._active),
            queued=len(self._queue),
            max_concurrent=self.settings.max_concurrent_workflows,
            max_queue_size=self.settings.max_queue_size,
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _register(
        self,
        definition: WorkflowDefinition,
        state: WorkflowExecutionState,
        paused: bool = False,
    ) -> _ActiveExecution:
        loop = asyncio.get_running_loop()
        timeout_ms = definition.timeout_ms or self.settings.workflow_timeout_ms
        handle = _ActiveExecution(
            definition=definition,
            state=state,
            graph=DependencyGraph(definition.steps),
            deadline=loop.time() + timeout_ms / 1000,
            timeout_ms=timeout_ms,
        )
        if paused:
            handle.paused_at = loop.time()
        else:
            handle.resume_gate.set()

        state.queue_position = None
        self._active[state.execution_id] = handle
        if self.metrics:
            self.metrics.set_active_workflows(len(self._active))
        return handle

    def _enqueue(self, definition: WorkflowDefinition, state: WorkflowExecutionState) -> None:
        state.status = WorkflowStatus.QUEUED
        self._queue.append(state.execution_id)
        self._queued[state.execution_id] = (definition, state)
        state.queue_position = len(self._queue)
        logger.info(
            "workflow_queued",
            execution_id=state.execution_id,
            queue_position=state.queue_position,
        )

    async def _activate(self, handle: _ActiveExecution) -> None:
        state = handle.state
        state.status = WorkflowStatus.RUNNING
        state.started_at = state.started_at or datetime.now(UTC)
        await self._persist(state)
        await self._emit_workflow(EventType.WORKFLOW_STARTED, handle.definition, state)
        handle.task = asyncio.create_task(
            self._run(handle), name=f"workflow-{handle.execution_id}"
        )

    async def _promote(self) -> None:
        """Move queued executions into free concurrency slots."""
        promoted = False
        while self._queue and len(self._active) < self.settings.max_concurrent_workflows:
            execution_id = self._queue.popleft()
            definition, state = self._queued.pop(execution_id)
            handle = self._register(definition, state)
            logger.info("workflow_dequeued", execution_id=execution_id)
            await self._activate(handle)
            promoted = True
        if promoted:
            await self._refresh_queue_positions()

    async def _refresh_queue_positions(self) -> None:
        for position, execution_id in enumerate(self._queue, start=1):
            _, state = self._queued[execution_id]
            if state.queue_position != position:
                state.queue_position = position
                await self._persist(state)

    async def _dequeue_loop(self) -> None:
        interval = self.settings.queue_poll_interval_ms / 1000
        while True:
            with contextlib.suppress(TimeoutError):
                async with asyncio.timeout(interval):
                    await self._wakeup.wait()
            self._wakeup.clear()
            try:
                await self._promote()
            except Exception as e:
                logger.exception("workflow_dequeue_error", error=str(e))

    async def _require_active(self, execution_id: str, action: str) -> _ActiveExecution:
        handle = self._active.get(execution_id)
        if handle is not None:
            return handle
        state = await self.get_status(execution_id)
        raise StateError("workflow", state.status, action)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run(self, handle: _ActiveExecution) -> None:
        """Drive one execution level by level until it reaches a terminal status."""
        state = handle.state
        logger.info(
            "workflow_started",
            execution_id=handle.execution_id,
            workflow_id=handle.definition.id,
            total_steps=len(state.steps),
        )

        try:
            for level in handle.graph.levels():
                if handle.cancelled or self._deadline_passed(handle):
                    break
                pending = [s for s in level if state.steps[s].status == StepStatus.PENDING]
                if pending:
                    await self._run_level(handle, pending)

            await self._finalize(handle)
        except Exception as e:
            logger.exception(
                "workflow_execution_error",
                execution_id=handle.execution_id,
                error=str(e),
            )
            await self._finalize(handle, error=f"Workflow execution error: {e}")
        finally:
            self._release(handle)

        if self._queue:
            await self._promote_safely()

    async def _run_level(self, handle: _ActiveExecution, step_ids: list[str]) -> None:
        """Run one dependency level under the parallelism limit."""
        await self._ensure_context(handle)
        semaphore = asyncio.Semaphore(self._parallel_limit(handle.definition))

        async def launch(step_id: str) -> None:
            async with semaphore:
                await handle.resume_gate.wait()
                if not self._can_launch(handle, step_id):
                    return
                await self._execute_step(handle, step_id)

        results = await asyncio.gather(
            *(launch(step_id) for step_id in step_ids),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    def _can_launch(self, handle: _ActiveExecution, step_id: str) -> bool:
        return (
            not handle.cancelled
            and not self._deadline_passed(handle)
            and handle.state.steps[step_id].status == StepStatus.PENDING
        )

    async def _execute_step(self, handle: _ActiveExecution, step_id: str) -> None:
        step = handle.definition.get_step(step_id)
        if step is None:
            raise NotFoundError("Workflow step", step_id)

        state = handle.state
        step_state = state.steps[step_id]
        if step.condition is not None:
            met = await self._condition_met(handle, step)
            if not self._can_launch(handle, step_id):
                return
            if not met:
                await self._skip_unmet(handle, step)
                return

        step_state.status = StepStatus.RUNNING
        step_state.started_at = datetime.now(UTC)
        step_state.error = None
        state.in_flight.append(step_id)
        await self._persist(state)
        await self._emit_step(EventType.STEP_STARTED, handle, step)

        logger.debug("workflow_step_started", execution_id=handle.execution_id, step_id=step_id)
        started = time.perf_counter()

        try:
            output = await self._attempt(handle, step, step_state)
            await self._store_output(handle, step, output)
        except _RetryAborted as e:
            step_state.status = StepStatus.CANCELLED if e.cancelled else StepStatus.FAILED
            step_state.error = str(e)
        except (TemplateError, AgentInvocationError, OperationTimeoutError) as e:
            step_state.status = StepStatus.FAILED
            step_state.error = e.message
        except EnsembleError as e:
            step_state.status = StepStatus.FAILED
            step_state.error = f"Failed to store step output: {e.message}"
        else:
            step_state.status = StepStatus.COMPLETED
            step_state.result = output
            step_state.error = None

        step_state.completed_at = datetime.now(UTC)
        step_state.duration_ms = (time.perf_counter() - started) * 1000
        if step_id in state.in_flight:
            state.in_flight.remove(step_id)

        skipped: list[str] = []
        if step_state.status == StepStatus.FAILED and not step.continue_on_error:
            skipped = self._skip_dependents(handle, step_id)

        await self._persist(state)

        if step_state.status == StepStatus.COMPLETED:
            logger.info(
                "workflow_step_completed",
                execution_id=handle.execution_id,
                step_id=step_id,
                attempts=step_state.attempts,
                duration_ms=round(step_state.duration_ms, 1),
            )
            await self._emit_step(EventType.STEP_COMPLETED, handle, step, result=output)
        else:
            logger.warning(
                "workflow_step_failed",
                execution_id=handle.execution_id,
                step_id=step_id,
                status=str(step_state.status),
                error=step_state.error,
                skipped=skipped,
                continue_on_error=step.continue_on_error,
            )
            await self._emit_step(EventType.STEP_FAILED, handle, step, error=step_state.error)
            for skipped_id in skipped:
                skipped_step = handle.definition.get_step(skipped_id)
                if skipped_step is not None:
                    await self._emit_step(
                        EventType.STEP_SKIPPED,
                        handle,
                        skipped_step,
                        error=state.steps[skipped_id].error,
                    )

        if self.metrics:
            self.metrics.record_step(
                str(step_state.status), step_state.duration_ms, step_state.retry_count
            )

    async def _attempt(
        self, handle: _ActiveExecution, step: WorkflowStep, step_state: StepState
    ) -> Any:
        """Invoke the step's agent under its retry policy."""
        policy = self._retry_policy(handle.definition, step)
        output: Any = None

        async for attempt in build_retrying(policy, self._sleep):
            with attempt:
                number = attempt.retry_state.attempt_number
                step_state.attempts = number
                if number > 1:
                    if handle.cancelled:
                        raise _RetryAborted(
                            f"Cancelled before retry {number - 1}: {step_state.error}",
                            cancelled=True,
                        )
                    if self._deadline_passed(handle):
                        raise _RetryAborted(
                            f"Workflow timed out before retry {number - 1}: {step_state.error}",
                            cancelled=False,
                        )
                    step_state.retry_count = number - 1
                    await self._persist(handle.state)
                    await self._emit_step(
                        EventType.STEP_RETRY, handle, step, error=step_state.error, attempt=number
                    )
                    logger.warning(
                        "workflow_step_retry",
                        execution_id=handle.execution_id,
                        step_id=step.id,
                        retry=number - 1,
                        max_retries=policy.max_retries,
                        error=step_state.error,
                    )

                try:
                    output = await self._invoke_step(handle, step)
                except RETRYABLE_ERRORS as e:
                    step_state.error = e.message
                    raise

        return output

    async def _invoke_step(self, handle: _ActiveExecution, step: WorkflowStep) -> Any:
        """Build the step prompt from the current context and call the agent.

        Raises:
            TemplateError: If the prompt cannot be resolved
            AgentInvocationError: If the agent reports a failure
            OperationTimeoutError: If the call exceeds its time budget
        """
        context = await self.context_store.get(handle.execution_id)
        data = context.data if context else {}
        variables = {**data, **self._bind_inputs(handle, step, data), **step.variables}

        if step.prompt_template_id is not None:
            resolution = await self.templates.resolve_template(step.prompt_template_id, variables)
        else:
            resolution = await self.templates.resolve(step.prompt or "", variables)

        if not resolution.success:
            raise TemplateError(
                f"Step '{step.id}' prompt: {resolution.error}",
                resolution.missing_variables,
            )
        prompt = resolution.content or ""
        if not prompt.strip():
            raise TemplateError(f"Step '{step.id}' resolved to an empty prompt")

        timeout_ms = self._step_timeout(handle, step)
        result = await invoke_agent(
            self.invoker,
            step.agent,
            AgentInput(prompt=prompt, context=variables),
            timeout_ms=timeout_ms,
            metadata={
                "execution_id": handle.execution_id,
                "workflow_id": handle.definition.id,
                "step_id": step.id,
            },
        )
        if result.success:
            return result.result
        if result.timed_out:
            raise OperationTimeoutError(f"Step '{step.id}'", timeout_ms or 0)
        raise AgentInvocationError(step.agent, result.error or "Agent invocation failed")

    def _skip_dependents(self, handle: _ActiveExecution, step_id: str) -> list[str]:
        skipped: list[str] = []
        for dependent in handle.graph.dependents_closure(step_id):
            dependent_state = handle.state.steps[dependent]
            if dependent_state.status == StepStatus.PENDING:
                dependent_state.status = StepStatus.SKIPPED
                dependent_state.error = f"Skipped: dependency '{step_id}' failed"
                skipped.append(dependent)
        return skipped

    async def _condition_met(self, handle: _ActiveExecution, step: WorkflowStep) -> bool:
        context = await self.context_store.get(handle.execution_id)
        return evaluate_condition(step.condition or "", context.data if context else {})

    async def _skip_unmet(self, handle: _ActiveExecution, step: WorkflowStep) -> None:
        """Skip a step whose condition is false; its dependents still run."""
        step_state = handle.state.steps[step.id]
        step_state.status = StepStatus.SKIPPED
        step_state.error = "Skipped: condition not met"
        step_state.completed_at = datetime.now(UTC)
        await self._persist(handle.state)

        logger.info(
            "workflow_step_condition_skipped",
            execution_id=handle.execution_id,
            step_id=step.id,
            condition=step.condition,
        )
        await self._emit_step(EventType.STEP_SKIPPED, handle, step, error=step_state.error)

    def _bind_inputs(
        self, handle: _ActiveExecution, step: WorkflowStep, data: dict[str, Any]
    ) -> dict[str, Any]:
        """Prompt variables from the step's input bindings; unresolved ones are left out."""
        bound: dict[str, Any] = {}
        for binding in step.inputs:
            if binding.source == "literal":
                bound[binding.variable] = binding.value
            elif binding.source == "step":
                source = handle.state.steps.get(binding.step_id or "")
                if source is not None and source.status == StepStatus.COMPLETED:
                    bound[binding.variable] = source.result
            else:
                value = paths.get_path(data, str(binding.value), _UNBOUND)
                if value is not _UNBOUND:
                    bound[binding.variable] = value
        return bound

    async def _store_output(
        self, handle: _ActiveExecution, step: WorkflowStep, output: Any
    ) -> None:
        """Write the result under the step id and to every mapped context path."""
        await self.context_store.set_path(handle.execution_id, step.id, output)
        for path, value in _mapped_outputs(step, output):
            await self.context_store.set_path(handle.execution_id, path, value)

    async def _ensure_context(self, handle: _ActiveExecution) -> None:
        """Create the execution context, rebuilding it from state when missing.

        The context expires with the stored state, but a pause has no time
        limit, so it is checked again before every level and on resume.
        """
        if await self.context_store.get(handle.execution_id) is not None:
            return

        state = handle.state
        data: dict[str, Any] = {
            **state.initial_context,
            "_workflow": {
                "id": handle.definition.id,
                "name": handle.definition.name,
                "execution_id": state.execution_id,
                "user_id": state.user_id,
                "started_at": (state.started_at or datetime.now(UTC)).isoformat(),
            },
        }
        restored = 0
        for step in handle.definition.steps:
            step_state = state.steps[step.id]
            if step_state.status != StepStatus.COMPLETED:
                continue
            data[step.id] = step_state.result
            for path, value in _mapped_outputs(step, step_state.result):
                paths.set_path(data, path, value)
            restored += 1

        await self.context_store.create(
            handle.execution_id, data, ttl_seconds=self.settings.state_ttl_seconds
        )
        if restored:
            logger.info(
                "workflow_context_rebuilt",
                execution_id=handle.execution_id,
                restored_steps=restored,
            )

    async def _finalize(self, handle: _ActiveExecution, error: str | None = None) -> None:
        """Settle the terminal status once no more steps will launch."""
        state = handle.state
        definition = handle.definition

        if state.status == WorkflowStatus.CANCELLED:
            await self._persist(state)
            self._record_workflow(state)
            await self._discard_context(handle)
            return

        pending = state.steps_with(StepStatus.PENDING)
        failed = state.steps_with(StepStatus.FAILED)

        if error is not None:
            state.status = WorkflowStatus.FAILED
            state.error = error
        elif pending and self._deadline_passed(handle):
            for step_id in pending:
                state.steps[step_id].status = StepStatus.SKIPPED
                state.steps[step_id].error = "Skipped: workflow timed out"
            state.status = WorkflowStatus.FAILED
            state.error = f"Workflow timed out after {handle.timeout_ms}ms"
        elif failed:
            first = failed[0]
            state.status = WorkflowStatus.FAILED
            state.error = f"Step '{first}' failed: {state.steps[first].error}"
        elif pending:
            state.status = WorkflowStatus.FAILED
            state.error = f"Workflow ended with unfinished steps: {', '.join(pending)}"
        else:
            state.status = WorkflowStatus.COMPLETED
            state.error = None

        state.completed_at = datetime.now(UTC)
        await self._persist(state)

        event_type = (
            EventType.WORKFLOW_COMPLETED
            if state.status == WorkflowStatus.COMPLETED
            else EventType.WORKFLOW_FAILED
        )
        await self._emit_workflow(event_type, definition, state)
        self._record_workflow(state)

        log = logger.info if state.status == WorkflowStatus.COMPLETED else logger.warning
        log(
            "workflow_finished",
            execution_id=state.execution_id,
            status=str(state.status),
            error=state.error,
            completed=len(state.steps_with(StepStatus.COMPLETED)),
            failed=len(failed),
        )
        await self._discard_context(handle)

    async def _discard_context(self, handle: _ActiveExecution) -> None:
        """Drop the context of a finished execution; step results stay in its state."""
        await self.context_store.clear(handle.execution_id)

    def _release(self, handle: _ActiveExecution) -> None:
        self._active.pop(handle.execution_id, None)
        self._finish(handle.execution_id)
        if self.metrics:
            self.metrics.set_active_workflows(len(self._active))
        self._wakeup.set()

    async def _promote_safely(self) -> None:
        try:
            await self._promote()
        except Exception as e:
            logger.exception("workflow_dequeue_error", error=str(e))

    def _finish(self, execution_id: str) -> None:
        done = self._done.pop(execution_id, None)
        if done is not None:
            done.set()

    def _mark_cancelled(self, state: WorkflowExecutionState) -> None:
        for step_state in state.steps.values():
            if step_state.status == StepStatus.PENDING:
                step_state.status = StepStatus.CANCELLED
        state.status = WorkflowStatus.CANCELLED
        state.queue_position = None
        state.completed_at = datetime.now(UTC)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _parallel_limit(self, definition: WorkflowDefinition) -> int:
        if not self.settings.enable_parallel_execution:
            return 1
        limit = self.settings.max_parallel_steps
        if definition.max_parallel_steps is not None:
            limit = min(limit, definition.max_parallel_steps)
        return limit

    def _retry_policy(self, definition: WorkflowDefinition, step: WorkflowStep) -> RetryPolicy:
        if step.retry_policy is not None:
            return step.retry_policy
        if definition.default_retry_policy is not None:
            return definition.default_retry_policy
        return RetryPolicy(
            max_retries=self.settings.default_max_retries,
            initial_delay_ms=self.settings.default_initial_delay_ms,
            backoff_multiplier=self.settings.default_backoff_multiplier,
            max_delay_ms=self.settings.default_max_delay_ms,
        )

    def _deadline_passed(self, handle: _ActiveExecution) -> bool:
        if handle.paused_at is not None:
            return False
        return asyncio.get_running_loop().time() >= handle.deadline

    def _step_timeout(self, handle: _ActiveExecution, step: WorkflowStep) -> float | None:
        remaining = max((handle.deadline - asyncio.get_running_loop().time()) * 1000, 1.0)
        if step.timeout_ms is None:
            return remaining
        return min(float(step.timeout_ms), remaining)

    def _record_workflow(self, state: WorkflowExecutionState) -> None:
        if not self.metrics:
            return
        duration_ms = 0.0
        if state.started_at and state.completed_at:
            duration_ms = (state.completed_at - state.started_at).total_seconds() * 1000
        self.metrics.record_workflow(str(state.status), duration_ms)

    async def _persist(self, state: WorkflowExecutionState) -> None:
        state.update_progress()
        if state.status == WorkflowStatus.COMPLETED:
            state.progress = 100
        state.touch()
        await self.state_store.save_state(state)

    async def _emit(self, event: Event) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event)

    async def _emit_workflow(
        self,
        event_type: EventType,
        definition: WorkflowDefinition,
        state: WorkflowExecutionState,
    ) -> None:
        await self._emit(
            WorkflowEvent(
                type=event_type,
                execution_id=state.execution_id,
                workflow_id=definition.id,
                status=str(state.status),
                progress=state.progress,
                error=state.error,
                completed_steps=len(state.steps_with(StepStatus.COMPLETED)),
                total_steps=len(state.steps),
            )
        )

    async def _emit_step(
        self,
        event_type: EventType,
        handle: _ActiveExecution,
        step: WorkflowStep,
        result: Any = None,
        error: str | None = None,
        attempt: int | None = None,
    ) -> None:
        step_state = handle.state.steps[step.id]
        await self._emit(
            StepEvent(
                type=event_type,
                execution_id=handle.execution_id,
                workflow_id=handle.definition.id,
                step_id=step.id,
                step_name=step.name,
                agent=step.agent,
                attempt=attempt or max(step_state.attempts, 1),
                result=result,
                error=error,
                duration_ms=step_state.duration_ms,
            )
        )
