"""Self-critique protocol.

An agent produces an output, an evaluator scores it against weighted
quality criteria, and the agent rewrites it from the critique until the
score reaches the stop threshold or the iteration budget runs out.
"""

from __future__ import annotations

import json
import time
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog
from pydantic import ValidationError as PydanticValidationError

from ensemble.agents.invoker import AgentInvoker
from ensemble.config import CritiqueSettings, get_critique_settings
from ensemble.context.store import ContextStore
from ensemble.events.bus import EventBus
from ensemble.events.types import Event, EventType, IterationEvent, ProtocolEvent
from ensemble.exceptions import NotFoundError, TemplateError, ValidationError
from ensemble.metrics import MetricsRecorder
from ensemble.orchestration.executor import TaskExecutor
from ensemble.orchestration.models import (
    OrchestrationPattern,
    OrchestrationRequest,
    ResultStatus,
    Task,
    TaskResult,
)
from ensemble.prompts import CritiquePrompts, PromptManager, get_prompt_manager
from ensemble.templates.resolver import TemplateResolver, interpolate

from .consensus import calculate_overall_score, meets_threshold, normalize_score, parse_json_object
from .models import (
    CritiqueEvaluation,
    CritiqueIteration,
    QualityCriterion,
    SelfCritiqueConfig,
    SelfCritiqueResult,
)

if TYPE_CHECKING:
    from ensemble.state.store import StateStore

logger = structlog.get_logger()

NEUTRAL_SCORE = 0.5
NEUTRAL_FEEDBACK = "Unable to parse evaluation. Please review the output manually."
RESULT_KIND = "critique"


def _as_text(output: Any) -> str:
    if isinstance(output, str):
        return output
    return json.dumps(output, indent=2, default=str, ensure_ascii=False)


def format_criteria(criteria: Sequence[QualityCriterion]) -> str:
    """Criteria as prompt text for caller-supplied evaluation templates."""
    lines = []
    for c in criteria:
        lines.append(f"- {c.name} (weight {c.weight}, threshold {c.threshold}): {c.description}")
        if c.evaluation_prompt:
            lines.append(f"  {c.evaluation_prompt}")
    return "\n".join(lines)


def neutral_evaluation(criteria: Sequence[QualityCriterion]) -> CritiqueEvaluation:
    """Evaluation used when the evaluator gives nothing usable."""
    return CritiqueEvaluation(
        overall_score=NEUTRAL_SCORE,
        criteria_scores={c.name: NEUTRAL_SCORE for c in criteria},
        feedback=NEUTRAL_FEEDBACK,
        meets_threshold=False,
    )


class SelfCritiqueProtocol:
    """Generate, evaluate and improve an output in iterations.

    Example:
        >>> protocol = SelfCritiqueProtocol(invoker, contexts)
        >>> result = await protocol.run(task, SelfCritiqueConfig(max_iterations=3), "u1")
        >>> result.final_output, result.final_score
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        context_store: ContextStore,
        templates: TemplateResolver | None = None,
        state_store: StateStore | None = None,
        event_bus: EventBus | None = None,
        metrics: MetricsRecorder | None = None,
        settings: CritiqueSettings | None = None,
        prompts: PromptManager | None = None,
    ) -> None:
        self.context_store = context_store
        self.state_store = state_store
        self.event_bus = event_bus
        self.metrics = metrics
        self.settings = settings or get_critique_settings()
        self.prompts = prompts or get_prompt_manager()
        self.executor = TaskExecutor(invoker, templates, metrics=metrics)

    def default_criteria(self) -> list[QualityCriterion]:
        """Criteria used when a configuration names none."""
        entries = self.prompts.get_data("critique", CritiquePrompts.DEFAULT_CRITERIA)
        return [QualityCriterion.model_validate(entry) for entry in entries]

    async def run(
        self,
        task: Task,
        config: SelfCritiqueConfig,
        user_id: str,
        context: dict[str, Any] | None = None,
        execution_id: str | None = None,
        timeout_ms: int | None = None,
    ) -> SelfCritiqueResult:
        """Run the generate/evaluate/improve loop.

        A failed generation ends the run with status failed; iterations
        completed before it are kept. Evaluator problems never fail a run.

        Args:
            task: Task producing the first output
            config: Criteria, threshold and limits
            user_id: Owner of the execution
            context: Variables for the task prompt
            execution_id: Id of the run, generated when omitted
            timeout_ms: Overall time budget, checked between iterations

        Returns:
            Self-critique result
        """
        execution_id = execution_id or str(uuid4())
        context = context or {}
        max_iterations = config.max_iterations or self.settings.default_max_iterations
        threshold = (
            config.stop_on_quality_threshold
            if config.stop_on_quality_threshold is not None
            else self.settings.default_quality_threshold
        )
        criteria = config.quality_criteria or self.default_criteria()
        evaluator = config.evaluator_agent or task.agent
        budget_ms = timeout_ms or self.settings.default_timeout_ms
        started = time.perf_counter()

        await self.context_store.create(
            execution_id,
            {
                "task": task.model_dump(mode="json"),
                "user_id": user_id,
                "iterations": [],
                "context": context,
            },
        )

        result = SelfCritiqueResult(id=execution_id, status=ResultStatus.COMPLETED)
        logger.info(
            "critique_started",
            execution_id=execution_id,
            max_iterations=max_iterations,
            threshold=threshold,
            criteria=[c.name for c in criteria],
        )

        try:
            for iteration in range(1, max_iterations + 1):
                iteration_started = time.perf_counter()
                await self._emit(
                    IterationEvent(
                        type=EventType.CRITIQUE_ITERATION_STARTED,
                        execution_id=execution_id,
                        iteration=iteration,
                    )
                )

                task_result = await self._generate(task, config, context, iteration, result)
                result.task_results.append(task_result)

                if not task_result.success:
                    result.status = ResultStatus.FAILED
                    result.converged = False
                    result.error = (
                        f"Generation failed at iteration {iteration}: {task_result.error}"
                    )
                    logger.warning(
                        "critique_generation_failed",
                        execution_id=execution_id,
                        iteration=iteration,
                        error=task_result.error,
                    )
                    break

                evaluation = await self.evaluate_output(
                    task_result.result,
                    criteria,
                    evaluator,
                    user_id=user_id,
                    template=config.evaluation_prompt_template,
                )
                critique_iteration = CritiqueIteration(
                    iteration=iteration,
                    output=task_result.result,
                    evaluation=evaluation,
                    duration_ms=(time.perf_counter() - iteration_started) * 1000,
                )
                result.iterations.append(critique_iteration)
                result.final_output = task_result.result
                result.final_score = evaluation.overall_score
                await self.context_store.set_path(
                    execution_id,
                    f"iterations[{iteration - 1}]",
                    critique_iteration.model_dump(mode="json"),
                )

                await self._emit(
                    IterationEvent(
                        type=EventType.CRITIQUE_ITERATION,
                        execution_id=execution_id,
                        iteration=iteration,
                        overall_score=evaluation.overall_score,
                        criteria_scores=evaluation.criteria_scores,
                        feedback=evaluation.feedback,
                        meets_threshold=evaluation.meets_threshold,
                    )
                )

                if evaluation.overall_score >= threshold:
                    result.converged = True
                    logger.info(
                        "critique_converged",
                        execution_id=execution_id,
                        iteration=iteration,
                        score=evaluation.overall_score,
                    )
                    await self._emit(
                        ProtocolEvent(
                            type=EventType.CRITIQUE_CONVERGED,
                            execution_id=execution_id,
                            converged=True,
                            score=evaluation.overall_score,
                            count=iteration,
                        )
                    )
                    break

                if iteration == max_iterations:
                    logger.info(
                        "critique_max_iterations",
                        execution_id=execution_id,
                        iterations=iteration,
                        score=evaluation.overall_score,
                    )
                    await self._emit(
                        ProtocolEvent(
                            type=EventType.CRITIQUE_MAX_ITERATIONS,
                            execution_id=execution_id,
                            converged=False,
                            score=evaluation.overall_score,
                            count=iteration,
                        )
                    )
                    break

                if (time.perf_counter() - started) * 1000 > budget_ms:
                    logger.warning(
                        "critique_timeout",
                        execution_id=execution_id,
                        iteration=iteration,
                        timeout_ms=budget_ms,
                    )
                    break
        except Exception as e:
            logger.exception("critique_failed", execution_id=execution_id, error=str(e))
            result.status = ResultStatus.FAILED
            result.converged = False
            result.error = str(e) or type(e).__name__
            await self._finish(result, started)
            await self._emit(
                ProtocolEvent(
                    type=EventType.CRITIQUE_ERROR,
                    execution_id=execution_id,
                    status=str(result.status),
                    count=len(result.iterations),
                    error=result.error,
                )
            )
            raise

        await self._finish(result, started)
        await self._emit(
            ProtocolEvent(
                type=EventType.CRITIQUE_COMPLETED,
                execution_id=execution_id,
                status=str(result.status),
                converged=result.converged,
                score=result.final_score,
                count=len(result.iterations),
                error=result.error,
            )
        )
        logger.info(
            "critique_completed",
            execution_id=execution_id,
            status=str(result.status),
            iterations=len(result.iterations),
            converged=result.converged,
            final_score=result.final_score,
            duration_ms=result.duration_ms,
        )
        return result

    async def get_result(self, critique_id: str) -> SelfCritiqueResult:
        """Load a finished self-critique run.

        Raises:
            NotFoundError: If no result is stored under the id
        """
        stored = None
        if self.state_store is not None:
            stored = await self.state_store.load_result(RESULT_KIND, critique_id)
        if stored is None:
            raise NotFoundError("Self-critique result", critique_id)
        return SelfCritiqueResult.model_validate(stored)

    async def get_iterations(self, critique_id: str) -> list[CritiqueIteration]:
        return (await self.get_result(critique_id)).iterations

    async def run_request(
        self, request: OrchestrationRequest, config: SelfCritiqueConfig | None = None
    ) -> SelfCritiqueResult:
        """Run self-critique on the first task of an orchestration request.

        Raises:
            ValidationError: If the request has no task or invalid options
        """
        if not request.tasks:
            raise ValidationError("Self-critique requires at least one task")
        if config is None:
            try:
                config = SelfCritiqueConfig.model_validate(request.options.critique or {})
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid self-critique options",
                    errors=[err["msg"] for err in e.errors()],
                    cause=e,
                ) from e

        return await self.run(
            request.tasks[0],
            config,
            request.user_id,
            context=request.context,
            execution_id=request.id,
            timeout_ms=request.timeout_ms,
        )

    async def evaluate_output(
        self,
        output: Any,
        criteria: Sequence[QualityCriterion],
        evaluator: str,
        user_id: str | None = None,
        template: str | None = None,
    ) -> CritiqueEvaluation:
        """Score an output against the criteria with an evaluator agent.

        The evaluator is expected to answer with JSON
        ``{criteriaScores, feedback, suggestions}``. A failed call or an
        answer without usable scores yields the neutral evaluation.

        Args:
            output: Output to judge
            criteria: Weighted criteria with thresholds
            evaluator: Agent reference of the evaluator
            user_id: Owner, forwarded in the agent context
            template: Caller-supplied evaluation prompt

        Returns:
            Evaluation with overall and per-criterion scores
        """
        output_text = _as_text(output)
        try:
            if template:
                prompt = interpolate(
                    template, {"output": output_text, "criteria": format_criteria(criteria)}
                ).unwrap()
            else:
                prompt = self.prompts.render(
                    "critique",
                    CritiquePrompts.EVALUATION_PROMPT,
                    output=output_text,
                    criteria=[c.model_dump() for c in criteria],
                )
        except TemplateError as e:
            logger.warning("evaluation_prompt_failed", error=e.message)
            return neutral_evaluation(criteria)

        task_result = await self.executor.invoke(
            "evaluation",
            evaluator,
            prompt,
            {"user_id": user_id, "type": "evaluation"},
            OrchestrationPattern.SELF_CRITIQUE,
            timeout_ms=self.settings.evaluation_timeout_ms,
        )
        if not task_result.success:
            logger.warning("evaluation_failed", evaluator=evaluator, error=task_result.error)
            return neutral_evaluation(criteria)

        parsed = parse_json_object(task_result.result) or {}
        raw_scores = parsed.get("criteriaScores", parsed.get("criteria_scores"))
        if not isinstance(raw_scores, dict):
            logger.warning("evaluation_unparseable", evaluator=evaluator)
            return neutral_evaluation(criteria)

        criteria_scores: dict[str, float] = {}
        for name, value in raw_scores.items():
            score = normalize_score(value)
            if score is not None:
                criteria_scores[str(name)] = score

        suggestions = parsed.get("suggestions")
        return CritiqueEvaluation(
            overall_score=calculate_overall_score(criteria_scores, criteria),
            criteria_scores=criteria_scores,
            feedback=str(parsed.get("feedback") or ""),
            suggestions=[str(s) for s in suggestions] if isinstance(suggestions, list) else [],
            meets_threshold=meets_threshold(criteria_scores, criteria),
        )

    async def _generate(
        self,
        task: Task,
        config: SelfCritiqueConfig,
        context: dict[str, Any],
        iteration: int,
        result: SelfCritiqueResult,
    ) -> TaskResult:
        """Run the task on iteration 1, the improvement prompt afterwards."""
        timeout_ms = task.timeout_ms or self.settings.generation_timeout_ms
        if iteration == 1:
            return await self.executor.execute(
                task, context, OrchestrationPattern.SELF_CRITIQUE, timeout_ms=timeout_ms
            )

        task_id = f"{task.id}_improve_{iteration}"
        previous = result.iterations[-1]
        try:
            prompt = await self._improvement_prompt(task, config, context, previous)
        except TemplateError as e:
            return TaskResult(task_id=task_id, success=False, error=e.message)

        return await self.executor.invoke(
            task_id,
            task.agent,
            prompt,
            {**context, **task.variables},
            OrchestrationPattern.SELF_CRITIQUE,
            timeout_ms=timeout_ms,
        )

    async def _improvement_prompt(
        self,
        task: Task,
        config: SelfCritiqueConfig,
        context: dict[str, Any],
        previous: CritiqueIteration,
    ) -> str:
        evaluation = previous.evaluation
        output_text = _as_text(previous.output)
        task_prompt = (await self.executor.render_prompt(task, context)).unwrap()

        if config.improvement_prompt_template:
            return interpolate(
                config.improvement_prompt_template,
                {
                    "task_prompt": task_prompt,
                    "output": output_text,
                    "feedback": evaluation.feedback,
                    "suggestions": "\n".join(f"- {s}" for s in evaluation.suggestions),
                    "scores": "\n".join(
                        f"- {name}: {score * 100:.1f}%"
                        for name, score in evaluation.criteria_scores.items()
                    ),
                },
            ).unwrap()

        return self.prompts.render(
            "critique",
            CritiquePrompts.IMPROVEMENT_PROMPT,
            task_prompt=task_prompt,
            output=output_text,
            criteria_scores=evaluation.criteria_scores,
            feedback=evaluation.feedback or "(none)",
            suggestions=evaluation.suggestions,
        )

    async def _finish(self, result: SelfCritiqueResult, started: float) -> None:
        result.duration_ms = (time.perf_counter() - started) * 1000
        result.completed_at = datetime.now(UTC)

        if self.state_store is not None:
            await self.state_store.save_result(RESULT_KIND, result.id, result)
        if self.metrics is not None:
            self.metrics.record_critique(
                iterations=len(result.iterations),
                converged=result.converged,
                final_score=result.final_score,
                duration_ms=result.duration_ms,
                improvement=result.quality_improvement,
            )
        await self.context_store.clear(result.id)

    async def _emit(self, event: Event) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event)
