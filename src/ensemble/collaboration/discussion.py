"""Multi-agent discussion protocol.

Participants answer a topic in rounds. Each round's contributions reduce to
a consensus score (or a facilitator's synthesis), and the discussion ends
when the score history converges, the round budget runs out, or the time
budget elapses between rounds.
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import structlog
from pydantic import ValidationError as PydanticValidationError

from ensemble.agents.invoker import AgentInvoker
from ensemble.config import DiscussionSettings, get_discussion_settings
from ensemble.context.store import ContextStore
from ensemble.events.bus import EventBus
from ensemble.events.types import ContributionEvent, Event, EventType, ProtocolEvent, RoundEvent
from ensemble.exceptions import NotFoundError, TemplateError, ValidationError
from ensemble.metrics import MetricsRecorder
from ensemble.orchestration.executor import TaskExecutor
from ensemble.orchestration.models import (
    OrchestrationPattern,
    OrchestrationRequest,
    ResultStatus,
    TaskResult,
)
from ensemble.prompts import DiscussionPrompts, PromptManager, get_prompt_manager
from ensemble.templates.resolver import interpolate, stringify

from .consensus import (
    check_convergence,
    evaluate_consensus,
    extract_agreement_score,
    normalize_score,
    parse_json_object,
)
from .models import (
    ConsensusStrategy,
    Contribution,
    DiscussionConfig,
    DiscussionResult,
    DiscussionRound,
    FacilitatorSynthesis,
    Participant,
    ParticipantSummary,
)

if TYPE_CHECKING:
    from ensemble.state.store import StateStore

logger = structlog.get_logger()

DEFAULT_TOPIC = "General discussion"
_EVENT_CONTENT_LIMIT = 500
RESULT_KIND = "discussion"


def read_contribution(result: Any) -> tuple[str, float | None]:
    """Split an agent result into contribution text and agreement score.

    Structured results may carry ``agreement_score``/``agreementScore``;
    otherwise the score is parsed from the text.
    """
    if isinstance(result, dict):
        content = result.get("content")
        text = content if isinstance(content, str) else json.dumps(result, default=str)
        raw = result.get("agreement_score", result.get("agreementScore"))
        if raw is not None:
            return text, normalize_score(raw)
        return text, extract_agreement_score(text)

    text = stringify(result)
    return text, extract_agreement_score(text)


class DiscussionProtocol:
    """Runs round-based discussions between participant agents.

    Example:
        >>> protocol = DiscussionProtocol(invoker, contexts)
        >>> result = await protocol.run("Pick a database", config, user_id="u1")
        >>> result.converged, result.consensus_score
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        context_store: ContextStore,
        state_store: StateStore | None = None,
        event_bus: EventBus | None = None,
        metrics: MetricsRecorder | None = None,
        settings: DiscussionSettings | None = None,
        prompts: PromptManager | None = None,
    ) -> None:
        """Initialize protocol.

        Args:
            invoker: Agent invoker for participants and facilitator
            context_store: Per-execution context tree
            state_store: Optional store for finished results
            event_bus: Optional lifecycle event bus
            metrics: Optional metrics recorder
            settings: Discussion settings, defaults to DISCUSSION_* environment
            prompts: Built-in prompt manager
        """
        self.context_store = context_store
        self.state_store = state_store
        self.event_bus = event_bus
        self.metrics = metrics
        self.settings = settings or get_discussion_settings()
        self.prompts = prompts or get_prompt_manager()
        self.executor = TaskExecutor(invoker, metrics=metrics)

    async def run(
        self,
        topic: str,
        config: DiscussionConfig,
        user_id: str,
        execution_id: str | None = None,
        timeout_ms: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> DiscussionResult:
        """Run a discussion to convergence or exhaustion.

        Args:
            topic: Subject the participants discuss
            config: Participants, strategy and limits
            user_id: Owner of the execution
            execution_id: Id of the run, generated when omitted
            timeout_ms: Overall time budget, checked between rounds
            context: Extra data stored with the execution context

        Returns:
            Completed discussion result

        Raises:
            ValidationError: If the configuration cannot run
        """
        strategy = config.consensus_strategy or ConsensusStrategy(
            self.settings.default_consensus_strategy
        )
        self._validate(config, strategy)

        execution_id = execution_id or str(uuid4())
        max_rounds = config.max_rounds or self.settings.default_max_rounds
        threshold = (
            config.convergence_threshold
            if config.convergence_threshold is not None
            else self.settings.default_convergence_threshold
        )
        budget_ms = timeout_ms or self.settings.default_timeout_ms
        started = time.perf_counter()

        await self.context_store.create(
            execution_id,
            {
                "topic": topic,
                "user_id": user_id,
                "participants": [
                    {"id": p.id, "agent": p.agent, "role": p.role} for p in config.participants
                ],
                "rounds": [],
                "context": context or {},
            },
        )

        result = DiscussionResult(
            id=execution_id,
            status=ResultStatus.COMPLETED,
            topic=topic,
            participant_summaries={
                p.id or "": ParticipantSummary(participant_id=p.id or "", role=p.role)
                for p in config.participants
            },
        )

        logger.info(
            "discussion_started",
            execution_id=execution_id,
            max_rounds=max_rounds,
            participant_count=len(config.participants),
            strategy=str(strategy),
        )

        try:
            for round_number in range(1, max_rounds + 1):
                previous = result.rounds[-1] if result.rounds else None
                discussion_round, task_results = await self._conduct_round(
                    execution_id, topic, config, strategy, round_number, previous, user_id
                )
                result.rounds.append(discussion_round)
                result.task_results.extend(task_results)
                await self.context_store.set_path(
                    execution_id,
                    f"rounds[{round_number - 1}]",
                    discussion_round.model_dump(mode="json"),
                )

                self._update_summaries(result)
                result.consensus_score = discussion_round.consensus_score
                result.final_consensus = discussion_round.synthesis or ""

                if check_convergence(result.rounds, threshold):
                    result.converged = True
                    logger.info(
                        "discussion_converged",
                        execution_id=execution_id,
                        round=round_number,
                        consensus_score=result.consensus_score,
                    )
                    await self._emit(
                        ProtocolEvent(
                            type=EventType.DISCUSSION_CONVERGED,
                            execution_id=execution_id,
                            converged=True,
                            score=result.consensus_score,
                            count=round_number,
                        )
                    )
                    break

                if (time.perf_counter() - started) * 1000 > budget_ms:
                    logger.warning(
                        "discussion_timeout",
                        execution_id=execution_id,
                        round=round_number,
                        timeout_ms=budget_ms,
                    )
                    break
        except Exception as e:
            logger.exception("discussion_failed", execution_id=execution_id, error=str(e))
            result.status = ResultStatus.FAILED
            result.converged = False
            result.error = str(e) or type(e).__name__
            await self._finish(result, started)
            await self._emit(
                ProtocolEvent(
                    type=EventType.DISCUSSION_ERROR,
                    execution_id=execution_id,
                    status=str(result.status),
                    count=len(result.rounds),
                    error=result.error,
                )
            )
            raise

        await self._finish(result, started)
        await self._emit(
            ProtocolEvent(
                type=EventType.DISCUSSION_COMPLETED,
                execution_id=execution_id,
                status=str(result.status),
                converged=result.converged,
                score=result.consensus_score,
                count=len(result.rounds),
            )
        )
        logger.info(
            "discussion_completed",
            execution_id=execution_id,
            rounds=len(result.rounds),
            converged=result.converged,
            consensus_score=result.consensus_score,
            duration_ms=result.duration_ms,
        )
        return result

    async def get_result(self, discussion_id: str) -> DiscussionResult:
        """Load a finished discussion.

        Raises:
            NotFoundError: If no result is stored under the id
        """
        stored = None
        if self.state_store is not None:
            stored = await self.state_store.load_result(RESULT_KIND, discussion_id)
        if stored is None:
            raise NotFoundError("Discussion result", discussion_id)
        return DiscussionResult.model_validate(stored)

    async def get_rounds(self, discussion_id: str) -> list[DiscussionRound]:
        """Rounds of a finished discussion, in order."""
        return (await self.get_result(discussion_id)).rounds

    async def run_request(
        self, request: OrchestrationRequest, config: DiscussionConfig | None = None
    ) -> DiscussionResult:
        """Run a discussion described by an orchestration request.

        The topic is the first task's prompt; the configuration comes from
        ``request.options.discussion`` when not given.
        """
        if config is None:
            try:
                config = DiscussionConfig.model_validate(request.options.discussion or {})
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid discussion options",
                    errors=[err["msg"] for err in e.errors()],
                    cause=e,
                ) from e

        first = request.tasks[0] if request.tasks else None
        topic = first.prompt if first is not None and first.prompt else DEFAULT_TOPIC

        return await self.run(
            topic,
            config,
            request.user_id,
            execution_id=request.id,
            timeout_ms=request.timeout_ms,
            context=request.context,
        )

    def _validate(self, config: DiscussionConfig, strategy: ConsensusStrategy) -> None:
        if not config.participants:
            raise ValidationError("Discussion requires at least one participant")
        if len(config.participants) > self.settings.max_participants:
            raise ValidationError(
                f"Too many participants: {len(config.participants)} exceeds maximum of "
                f"{self.settings.max_participants}"
            )
        if strategy == ConsensusStrategy.FACILITATOR and not config.facilitator_agent:
            raise ValidationError(
                "facilitator_agent is required when consensus_strategy is 'facilitator'"
            )

    async def _conduct_round(
        self,
        execution_id: str,
        topic: str,
        config: DiscussionConfig,
        strategy: ConsensusStrategy,
        round_number: int,
        previous: DiscussionRound | None,
        user_id: str,
    ) -> tuple[DiscussionRound, list[TaskResult]]:
        """Invoke every participant, then score the round."""
        round_started = time.perf_counter()
        await self._emit(
            RoundEvent(
                type=EventType.DISCUSSION_ROUND_STARTED,
                execution_id=execution_id,
                round=round_number,
                participant_count=len(config.participants),
            )
        )

        semaphore = asyncio.Semaphore(self.settings.max_parallel_participants)

        async def contribute(participant: Participant) -> tuple[Contribution | None, TaskResult]:
            async with semaphore:
                return await self._contribute(
                    execution_id, topic, config, participant, round_number, previous, user_id
                )

        outcomes = await asyncio.gather(*(contribute(p) for p in config.participants))

        contributions: list[Contribution] = []
        task_results: list[TaskResult] = []
        for contribution, task_result in outcomes:
            task_results.append(task_result)
            if contribution is None:
                continue
            contributions.append(contribution)
            content = contribution.content
            if len(content) > _EVENT_CONTENT_LIMIT:
                content = content[:_EVENT_CONTENT_LIMIT] + "..."
            await self._emit(
                ContributionEvent(
                    execution_id=execution_id,
                    round=round_number,
                    participant_id=contribution.participant_id,
                    role=contribution.role,
                    content=content,
                    agreement_score=contribution.agreement_score,
                )
            )

        synthesis: FacilitatorSynthesis | None = None
        synthesis_text: str | None = None
        if strategy == ConsensusStrategy.FACILITATOR:
            synthesis, synthesis_text, facilitator_result = await self._facilitate(
                execution_id, topic, config, round_number, contributions, user_id
            )
            task_results.append(facilitator_result)

        if synthesis is not None:
            reported = min(max(synthesis.consensus_score, 0.0), 1.0)
            score = evaluate_consensus(contributions, strategy, facilitator_score=reported)
        elif strategy == ConsensusStrategy.FACILITATOR:
            score = evaluate_consensus(contributions, ConsensusStrategy.MAJORITY)
        else:
            score = evaluate_consensus(contributions, strategy)

        discussion_round = DiscussionRound(
            round=round_number,
            contributions=contributions,
            synthesis=synthesis.synthesis if synthesis is not None else synthesis_text,
            consensus_score=score,
            agreements=synthesis.agreements if synthesis is not None else [],
            disagreements=synthesis.disagreements if synthesis is not None else [],
            next_steps=synthesis.next_steps if synthesis is not None else [],
            duration_ms=(time.perf_counter() - round_started) * 1000,
        )

        logger.info(
            "discussion_round_completed",
            execution_id=execution_id,
            round=round_number,
            contributions=len(contributions),
            failures=sum(1 for r in task_results if not r.success),
            consensus_score=score,
        )
        await self._emit(
            RoundEvent(
                type=EventType.DISCUSSION_ROUND_COMPLETED,
                execution_id=execution_id,
                round=round_number,
                participant_count=len(contributions),
                consensus_score=score,
                synthesis=discussion_round.synthesis,
            )
        )
        return discussion_round, task_results

    async def _contribute(
        self,
        execution_id: str,
        topic: str,
        config: DiscussionConfig,
        participant: Participant,
        round_number: int,
        previous: DiscussionRound | None,
        user_id: str,
    ) -> tuple[Contribution | None, TaskResult]:
        participant_id = participant.id or participant.role
        task_id = f"{participant_id}_round_{round_number}"

        try:
            prompt = self._participant_prompt(config, participant, topic, round_number, previous)
        except TemplateError as e:
            logger.warning(
                "participant_prompt_failed",
                execution_id=execution_id,
                participant_id=participant_id,
                error=e.message,
            )
            return None, TaskResult(task_id=task_id, success=False, error=e.message)

        task_result = await self.executor.invoke(
            task_id,
            participant.agent,
            prompt,
            {
                "execution_id": execution_id,
                "user_id": user_id,
                "round": round_number,
                "role": participant.role,
            },
            OrchestrationPattern.DISCUSSION,
            timeout_ms=self.settings.participant_timeout_ms,
            system_prompt=participant.system_prompt,
        )
        if not task_result.success:
            return None, task_result

        content, agreement_score = read_contribution(task_result.result)
        contribution = Contribution(
            participant_id=participant_id,
            role=participant.role,
            content=content,
            agreement_score=agreement_score,
            weight=participant.weight,
        )
        return contribution, task_result

    def _participant_prompt(
        self,
        config: DiscussionConfig,
        participant: Participant,
        topic: str,
        round_number: int,
        previous: DiscussionRound | None,
    ) -> str:
        previous_contributions = (
            [{"role": c.role, "content": c.content} for c in previous.contributions]
            if previous
            else []
        )
        previous_synthesis = previous.synthesis if previous else None

        if config.contribution_prompt_template:
            return interpolate(
                config.contribution_prompt_template,
                {
                    "topic": topic,
                    "role": participant.role,
                    "perspective": participant.perspective or "General perspective",
                    "round": round_number,
                    "previous_synthesis": previous_synthesis,
                    "previous_contributions": "\n".join(
                        f"- {c['role']}: {c['content']}" for c in previous_contributions
                    ),
                },
            ).unwrap()

        return self.prompts.render(
            "discussion",
            DiscussionPrompts.PARTICIPANT_PROMPT,
            role=participant.role,
            perspective=participant.perspective,
            topic=topic,
            round_number=round_number,
            previous_synthesis=previous_synthesis,
            previous_contributions=previous_contributions,
        )

    async def _facilitate(
        self,
        execution_id: str,
        topic: str,
        config: DiscussionConfig,
        round_number: int,
        contributions: list[Contribution],
        user_id: str,
    ) -> tuple[FacilitatorSynthesis | None, str | None, TaskResult]:
        """Ask the facilitator for a synthesis.

        Returns:
            Parsed synthesis (None when unusable), raw text, and the call's
            task result
        """
        task_id = f"facilitator_round_{round_number}"
        contribution_rows = [{"role": c.role, "content": c.content} for c in contributions]

        try:
            if config.synthesis_prompt_template:
                prompt = interpolate(
                    config.synthesis_prompt_template,
                    {
                        "topic": topic,
                        "round": round_number,
                        "contributions": "\n\n".join(
                            f"Participant ({c['role']}): {c['content']}" for c in contribution_rows
                        ),
                    },
                ).unwrap()
            else:
                prompt = self.prompts.render(
                    "discussion",
                    DiscussionPrompts.FACILITATOR_PROMPT,
                    topic=topic,
                    round_number=round_number,
                    contributions=contribution_rows,
                )
        except TemplateError as e:
            logger.warning("facilitator_prompt_failed", execution_id=execution_id, error=e.message)
            return None, None, TaskResult(task_id=task_id, success=False, error=e.message)

        task_result = await self.executor.invoke(
            task_id,
            config.facilitator_agent or "",
            prompt,
            {
                "execution_id": execution_id,
                "user_id": user_id,
                "round": round_number,
                "type": "facilitator",
            },
            OrchestrationPattern.DISCUSSION,
            timeout_ms=self.settings.participant_timeout_ms,
        )
        if not task_result.success:
            logger.warning(
                "facilitator_synthesis_failed",
                execution_id=execution_id,
                round=round_number,
                error=task_result.error,
            )
            return None, None, task_result

        raw_text = stringify(task_result.result)
        parsed = parse_json_object(task_result.result)
        if parsed is not None:
            try:
                return FacilitatorSynthesis.model_validate(parsed), raw_text, task_result
            except PydanticValidationError:
                pass

        logger.warning(
            "facilitator_output_unparseable",
            execution_id=execution_id,
            round=round_number,
        )
        return None, raw_text, task_result

    def _update_summaries(self, result: DiscussionResult) -> None:
        for participant_id, summary in result.participant_summaries.items():
            mine = [
                c
                for r in result.rounds
                for c in r.contributions
                if c.participant_id == participant_id
            ]
            scores = [c.agreement_score for c in mine if c.agreement_score is not None]
            summary.contributions = len(mine)
            summary.agreement_rate = sum(scores) / len(scores) if scores else 0.0

    async def _finish(self, result: DiscussionResult, started: float) -> None:
        result.duration_ms = (time.perf_counter() - started) * 1000
        result.completed_at = datetime.now(UTC)

        if self.state_store is not None:
            await self.state_store.save_result(RESULT_KIND, result.id, result)
        if self.metrics is not None:
            self.metrics.record_discussion(
                rounds=len(result.rounds),
                converged=result.converged,
                consensus_score=result.consensus_score,
                duration_ms=result.duration_ms,
            )
        await self.context_store.clear(result.id)

    async def _emit(self, event: Event) -> None:
        if self.event_bus is not None:
            await self.event_bus.emit(event)
