"""Flat task-list orchestration.

Runs a list of tasks with one of the execution patterns: sequential,
parallel, conditional, map-reduce, or one of the collaboration protocols.
Unlike workflows, a request has no dependency graph and no persisted state
machine; it runs to completion in the caller's task.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from ensemble.agents.invoker import AgentInvoker
from ensemble.config import OrchestrationSettings, get_orchestration_settings
from ensemble.context.store import ContextStore, InMemoryContextStore
from ensemble.events.bus import EventBus
from ensemble.events.types import EventType, OrchestrationEvent
from ensemble.exceptions import NotFoundError, ValidationError
from ensemble.metrics import MetricsRecorder
from ensemble.templates.resolver import TemplateResolver

from .conditions import ConditionError, compile_condition, evaluate_condition
from .executor import TaskExecutor
from .models import (
    OrchestrationPattern,
    OrchestrationRequest,
    OrchestrationResult,
    ResultStatus,
    Task,
    TaskResult,
)

if TYPE_CHECKING:
    from ensemble.collaboration.critique import SelfCritiqueProtocol
    from ensemble.collaboration.discussion import DiscussionProtocol
    from ensemble.state.store import StateStore

logger = structlog.get_logger()

MAP_TASK_ID = "map"
REDUCE_TASK_ID = "reduce"

RESULT_KIND = "orchestration"


class Orchestrator:
    """Runs orchestration requests.

    Example:
        >>> orchestrator = Orchestrator(invoker, templates)
        >>> result = await orchestrator.orchestrate(
        ...     OrchestrationRequest(user_id="u1", pattern="parallel", tasks=tasks)
        ... )
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        templates: TemplateResolver,
        state_store: StateStore | None = None,
        event_bus: EventBus | None = None,
        metrics: MetricsRecorder | None = None,
        settings: OrchestrationSettings | None = None,
        context_store: ContextStore | None = None,
        discussion: DiscussionProtocol | None = None,
        critique: SelfCritiqueProtocol | None = None,
    ) -> None:
        """Initialize orchestrator.

        Args:
            invoker: Agent invoker for every task
            templates: Prompt template resolver
            state_store: Optional store for finished results
            event_bus: Optional lifecycle event bus
            metrics: Optional metrics recorder
            settings: Orchestration settings, defaults to ORCHESTRATION_* environment
            context_store: Context store handed to protocols built on demand
            discussion: Protocol for the discussion pattern
            critique: Protocol for the self-critique pattern
        """
        self.invoker = invoker
        self.templates = templates
        self.state_store = state_store
        self.event_bus = event_bus
        self.metrics = metrics
        self.settings = settings or get_orchestration_settings()
        self.context_store = context_store
        self.discussion = discussion
        self.critique = critique
        self.executor = TaskExecutor(invoker, templates, metrics=metrics, settings=self.settings)

    async def orchestrate(self, request: OrchestrationRequest) -> OrchestrationResult:
        """Validate and run a request.

        Task failures are reported in the result, never raised.

        Raises:
            ValidationError: If the request is malformed
        """
        self.validate_request(request)

        started = time.perf_counter()
        started_at = datetime.now(UTC)
        logger.info(
            "orchestration_started",
            orchestration_id=request.id,
            pattern=str(request.pattern),
            task_count=len(request.tasks),
        )

        match request.pattern:
            case OrchestrationPattern.SEQUENTIAL:
                result = await self._run_sequential(request)
            case OrchestrationPattern.PARALLEL:
                result = await self._run_parallel(request)
            case OrchestrationPattern.CONDITIONAL:
                result = await self._run_conditional(request)
            case OrchestrationPattern.MAP_REDUCE:
                result = await self._run_map_reduce(request)
            case OrchestrationPattern.DISCUSSION:
                result = await self._run_discussion(request)
            case OrchestrationPattern.SELF_CRITIQUE:
                result = await self._run_critique(request)

        result.started_at = started_at
        result.completed_at = datetime.now(UTC)
        result.duration_ms = (time.perf_counter() - started) * 1000

        await self._finish(request, result)
        return result

    def validate_request(self, request: OrchestrationRequest) -> None:
        """Check the task list and pattern preconditions before any agent call.

        Raises:
            ValidationError: Listing every problem found
        """
        errors: list[str] = []
        if not request.tasks:
            errors.append("Orchestration requires at least one task")

        seen: set[str] = set()
        for task in request.tasks:
            if task.id in seen:
                errors.append(f"Duplicate task id: {task.id}")
            seen.add(task.id)

            if (task.prompt is None) == (task.prompt_template_id is None):
                errors.append(
                    f"Task '{task.id}' must set exactly one of prompt and prompt_template_id"
                )
            elif task.prompt is not None and not task.prompt.strip():
                errors.append(f"Task '{task.id}' has an empty prompt")

            if task.condition is not None:
                try:
                    compile_condition(task.condition)
                except ConditionError as e:
                    errors.append(f"Task '{task.id}' has an invalid condition: {e.message}")

        if request.pattern == OrchestrationPattern.MAP_REDUCE:
            if MAP_TASK_ID not in seen:
                errors.append("map-reduce requires a task with id 'map'")
            items = request.options.items
            if not items:
                errors.append("map-reduce requires at least one item in options.items")
            elif len(items) > self.settings.max_map_reduce_items:
                errors.append(
                    f"map-reduce has {len(items)} items, maximum is "
                    f"{self.settings.max_map_reduce_items}"
                )

        if errors:
            logger.warning(
                "orchestration_validation_failed",
                orchestration_id=request.id,
                errors=errors,
            )
            raise ValidationError(
                f"Invalid orchestration request: {'; '.join(errors)}", errors=errors
            )

    async def get_result(self, orchestration_id: str) -> OrchestrationResult:
        """Load a finished orchestration result.

        Raises:
            NotFoundError: If no result is stored under the id
        """
        stored = None
        if self.state_store is not None:
            stored = await self.state_store.load_result(RESULT_KIND, orchestration_id)
        if stored is None:
            raise NotFoundError("Orchestration result", orchestration_id)
        return OrchestrationResult.model_validate(stored)

    async def _run_sequential(self, request: OrchestrationRequest) -> OrchestrationResult:
        context = dict(request.context)
        results: list[TaskResult] = []

        for task in request.tasks:
            task_result = await self._execute(request, task, context)
            results.append(task_result)
            if not task_result.success:
                return self._result(
                    request,
                    ResultStatus.FAILED,
                    results,
                    error=f"Task '{task.id}' failed: {task_result.error}",
                )
            context["_lastResult"] = task_result.result
            context[f"_task_{task.id}"] = task_result.result

        return self._result(
            request,
            ResultStatus.COMPLETED,
            results,
            aggregated=results[-1].result if results else None,
        )

    async def _run_parallel(self, request: OrchestrationRequest) -> OrchestrationResult:
        results = await self._bounded(
            request,
            [self._execute(request, task, request.context) for task in request.tasks],
        )
        failed = [r for r in results if not r.success]
        if failed:
            return self._result(
                request,
                ResultStatus.FAILED,
                results,
                error=f"{len(failed)} of {len(results)} tasks failed",
            )
        return self._result(
            request,
            ResultStatus.COMPLETED,
            results,
            aggregated={r.task_id: r.result for r in results},
        )

    async def _run_conditional(self, request: OrchestrationRequest) -> OrchestrationResult:
        selected = next(
            (
                task
                for task in request.tasks
                if task.condition is not None
                and evaluate_condition(task.condition, request.context)
            ),
            None,
        )
        if selected is None:
            selected = next((task for task in request.tasks if task.condition is None), None)

        if selected is None:
            logger.info("orchestration_no_branch_matched", orchestration_id=request.id)
            return self._result(request, ResultStatus.COMPLETED, [])

        logger.debug(
            "orchestration_branch_selected",
            orchestration_id=request.id,
            task_id=selected.id,
        )
        task_result = await self._execute(request, selected, request.context)
        if not task_result.success:
            return self._result(
                request,
                ResultStatus.FAILED,
                [task_result],
                error=f"Task '{selected.id}' failed: {task_result.error}",
            )
        return self._result(
            request, ResultStatus.COMPLETED, [task_result], aggregated=task_result.result
        )

    async def _run_map_reduce(self, request: OrchestrationRequest) -> OrchestrationResult:
        map_task = next(task for task in request.tasks if task.id == MAP_TASK_ID)
        reduce_task = next((task for task in request.tasks if task.id == REDUCE_TASK_ID), None)
        items = request.options.items

        map_calls = [
            self._execute(
                request,
                map_task,
                {**request.context, "_item": item, "_itemIndex": index, "_totalItems": len(items)},
                task_id=f"{MAP_TASK_ID}_{index}",
            )
            for index, item in enumerate(items)
        ]
        map_results = await self._bounded(request, map_calls)

        failed = [r for r in map_results if not r.success]
        if failed:
            details = "; ".join(f"{r.task_id}: {r.error}" for r in failed)
            return self._result(
                request,
                ResultStatus.FAILED,
                map_results,
                error=f"Map phase failed: {details}",
            )

        mapped = [r.result for r in map_results]
        if reduce_task is None:
            return self._result(request, ResultStatus.COMPLETED, map_results, aggregated=mapped)

        reduce_result = await self._execute(
            request,
            reduce_task,
            {**request.context, "_mapResults": mapped, "_resultCount": len(mapped)},
        )
        results = [*map_results, reduce_result]
        if not reduce_result.success:
            return self._result(
                request,
                ResultStatus.FAILED,
                results,
                error=f"Reduce phase failed: {reduce_result.error}",
            )
        return self._result(
            request, ResultStatus.COMPLETED, results, aggregated=reduce_result.result
        )

    async def _run_discussion(self, request: OrchestrationRequest) -> OrchestrationResult:
        if self.discussion is None:
            from ensemble.collaboration.discussion import DiscussionProtocol

            self.discussion = DiscussionProtocol(
                self.invoker,
                self._require_context_store(),
                state_store=self.state_store,
                event_bus=self.event_bus,
                metrics=self.metrics,
            )

        outcome = await self.discussion.run_request(request)
        return self._result(
            request,
            outcome.status,
            outcome.task_results,
            aggregated=outcome.model_dump(mode="json"),
            error=outcome.error,
        )

    async def _run_critique(self, request: OrchestrationRequest) -> OrchestrationResult:
        if self.critique is None:
            from ensemble.collaboration.critique import SelfCritiqueProtocol

            self.critique = SelfCritiqueProtocol(
                self.invoker,
                self._require_context_store(),
                templates=self.templates,
                state_store=self.state_store,
                event_bus=self.event_bus,
                metrics=self.metrics,
            )

        outcome = await self.critique.run_request(request)
        return self._result(
            request,
            outcome.status,
            outcome.task_results,
            aggregated=outcome.model_dump(mode="json"),
            error=outcome.error,
        )

    def _require_context_store(self) -> ContextStore:
        if self.context_store is None:
            self.context_store = InMemoryContextStore()
        return self.context_store

    async def _execute(
        self,
        request: OrchestrationRequest,
        task: Task,
        context: dict[str, Any],
        task_id: str | None = None,
    ) -> TaskResult:
        return await self.executor.execute(
            task,
            context,
            str(request.pattern),
            task_id=task_id,
            timeout_ms=request.timeout_ms,
        )

    async def _bounded(
        self, request: OrchestrationRequest, calls: list[Awaitable[TaskResult]]
    ) -> list[TaskResult]:
        """Await calls concurrently, at most ``max_parallel`` at a time, in input order."""
        limit = request.options.max_parallel or self.settings.max_parallel_tasks
        if limit is None:
            return list(await asyncio.gather(*calls))

        semaphore = asyncio.Semaphore(limit)

        async def bounded(call: Awaitable[TaskResult]) -> TaskResult:
            async with semaphore:
                return await call

        return list(await asyncio.gather(*(bounded(call) for call in calls)))

    def _result(
        self,
        request: OrchestrationRequest,
        status: ResultStatus,
        task_results: list[TaskResult],
        aggregated: Any = None,
        error: str | None = None,
    ) -> OrchestrationResult:
        return OrchestrationResult(
            id=request.id,
            status=status,
            pattern=request.pattern,
            task_results=task_results,
            aggregated_result=aggregated,
            error=error,
        )

    async def _finish(self, request: OrchestrationRequest, result: OrchestrationResult) -> None:
        if self.state_store is not None:
            await self.state_store.save_result(RESULT_KIND, result.id, result)

        failed = result.status == ResultStatus.FAILED
        log = logger.warning if failed else logger.info
        log(
            "orchestration_finished",
            orchestration_id=result.id,
            user_id=request.user_id,
            pattern=str(result.pattern),
            status=str(result.status),
            task_count=len(result.task_results),
            duration_ms=result.duration_ms,
            error=result.error,
        )

        event_type = EventType.ORCHESTRATION_FAILED if failed else EventType.ORCHESTRATION_COMPLETED
        if self.event_bus is not None:
            await self.event_bus.emit(
                OrchestrationEvent(
                    type=event_type,
                    execution_id=result.id,
                    pattern=str(result.pattern),
                    status=str(result.status),
                    task_count=len(result.task_results),
                    error=result.error,
                    duration_ms=result.duration_ms,
                )
            )
