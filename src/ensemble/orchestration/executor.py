"""Single-task execution shared by the orchestration patterns."""

from __future__ import annotations

from typing import Any

import structlog

from ensemble.agents.invoker import AgentInput, AgentInvoker, invoke_agent
from ensemble.config import OrchestrationSettings, get_orchestration_settings
from ensemble.metrics import MetricsRecorder
from ensemble.templates.resolver import TemplateRegistry, TemplateResolution, TemplateResolver

from .models import Task, TaskResult

logger = structlog.get_logger()


class TaskExecutor:
    """Resolves task prompts and invokes agents, reporting outcomes as values."""

    def __init__(
        self,
        invoker: AgentInvoker,
        templates: TemplateResolver | None = None,
        metrics: MetricsRecorder | None = None,
        settings: OrchestrationSettings | None = None,
    ) -> None:
        self.invoker = invoker
        self.templates = templates if templates is not None else TemplateRegistry()
        self.metrics = metrics
        self.settings = settings or get_orchestration_settings()

    async def execute(
        self,
        task: Task,
        context: dict[str, Any],
        pattern: str,
        task_id: str | None = None,
        timeout_ms: int | None = None,
    ) -> TaskResult:
        """Run one task against a context.

        Template variables are the context overlaid with the task's own
        variables. The agent receives the same merged bag as its context.

        Args:
            task: Task to run
            context: Orchestration context at the time of the call
            pattern: Pattern name, used for metrics
            task_id: Result id, defaults to the task id
            timeout_ms: Fallback time budget when the task sets none

        Returns:
            Task result; failures are reported with success=False
        """
        result_id = task_id or task.id
        variables = {**context, **task.variables}
        resolution = await self.render_prompt(task, context)

        if not resolution.success or resolution.content is None:
            error = f"Template resolution failed: {resolution.error}"
            logger.warning("task_template_failed", task_id=result_id, error=resolution.error)
            result = TaskResult(task_id=result_id, success=False, error=error)
            self._record(pattern, result)
            return result

        return await self.invoke(
            result_id,
            task.agent,
            resolution.content,
            variables,
            pattern,
            timeout_ms=task.timeout_ms or timeout_ms,
        )

    async def render_prompt(self, task: Task, context: dict[str, Any]) -> TemplateResolution:
        """Resolve a task's prompt against the context and its own variables."""
        variables = {**context, **task.variables}
        if task.prompt_template_id is not None:
            return await self.templates.resolve_template(task.prompt_template_id, variables)
        return await self.templates.resolve(task.prompt or "", variables)

    async def invoke(
        self,
        task_id: str,
        agent: str,
        prompt: str,
        context: dict[str, Any],
        pattern: str,
        timeout_ms: int | None = None,
        system_prompt: str | None = None,
    ) -> TaskResult:
        """Invoke an agent with an already rendered prompt."""
        agent_result = await invoke_agent(
            self.invoker,
            agent,
            AgentInput(prompt=prompt, context=context, system_prompt=system_prompt),
            timeout_ms=timeout_ms or self.settings.default_timeout_ms,
        )

        if agent_result.success:
            result = TaskResult(
                task_id=task_id,
                success=True,
                result=agent_result.result,
                duration_ms=agent_result.duration_ms,
            )
        else:
            logger.warning("task_failed", task_id=task_id, agent=agent, error=agent_result.error)
            result = TaskResult(
                task_id=task_id,
                success=False,
                error=agent_result.error or f"Agent '{agent}' failed",
                duration_ms=agent_result.duration_ms,
            )

        self._record(pattern, result)
        return result

    def _record(self, pattern: str, result: TaskResult) -> None:
        if self.metrics is not None:
            self.metrics.record_task(pattern, result.success, result.duration_ms)
