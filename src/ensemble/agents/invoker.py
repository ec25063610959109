"""Agent invocation port.

Agents are opaque capability providers addressed by a reference string.
Invokers report failures as values; callers never have to guard against
exceptions escaping an agent call.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger()

AgentCallable = Callable[["AgentInput"], Awaitable[Any]]

TIMEOUT_ERROR_CODE = "timeout"


class AgentInput(BaseModel):
    """Input handed to an agent."""

    prompt: str
    context: dict[str, Any] = Field(default_factory=dict)
    system_prompt: str | None = None


class InvocationOptions(BaseModel):
    """Per-call invocation options."""

    timeout_ms: int | None = Field(default=None, gt=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class AgentResult(BaseModel):
    """Outcome of one agent call."""

    success: bool
    result: Any = None
    error: str | None = None
    error_code: str | None = None
    duration_ms: float = 0.0

    @property
    def timed_out(self) -> bool:
        """Whether the call failed because it ran out of time."""
        return self.error_code == TIMEOUT_ERROR_CODE


class AgentInvoker(Protocol):
    """Uniform execute contract shared by every agent backend."""

    async def execute(
        self,
        ref: str,
        agent_input: AgentInput,
        options: InvocationOptions | None = None,
    ) -> AgentResult: ...


async def invoke_agent(
    invoker: AgentInvoker,
    ref: str,
    agent_input: AgentInput,
    timeout_ms: float | None = None,
    metadata: dict[str, Any] | None = None,
) -> AgentResult:
    """Invoke an agent with a hard time budget.

    An overdue call becomes a failed result with ``error_code="timeout"``.
    An exception leaking out of a misbehaving invoker becomes a failed
    result as well.

    Args:
        invoker: Agent invoker
        ref: Agent reference
        agent_input: Prompt and context
        timeout_ms: Time budget in milliseconds, None for unbounded
        metadata: Extra options forwarded to the invoker

    Returns:
        Agent result, never raises for agent-side failures
    """
    options = InvocationOptions(
        timeout_ms=int(timeout_ms) if timeout_ms else None,
        metadata=metadata or {},
    )
    started = time.perf_counter()

    try:
        async with asyncio.timeout(timeout_ms / 1000 if timeout_ms else None):
            return await invoker.execute(ref, agent_input, options)
    except TimeoutError:
        elapsed = (time.perf_counter() - started) * 1000
        logger.warning("agent_call_timeout", agent=ref, timeout_ms=timeout_ms)
        return AgentResult(
            success=False,
            error=f"Agent '{ref}' timed out after {int(timeout_ms or 0)}ms",
            error_code=TIMEOUT_ERROR_CODE,
            duration_ms=elapsed,
        )
    except Exception as e:
        elapsed = (time.perf_counter() - started) * 1000
        logger.exception("agent_call_raised", agent=ref, error=str(e))
        return AgentResult(
            success=False,
            error=str(e) or type(e).__name__,
            error_code="invoker_error",
            duration_ms=elapsed,
        )


class CallableAgentInvoker:
    """In-process invoker backed by registered async callables.

    Example:
        >>> invoker = CallableAgentInvoker()
        >>> invoker.register("echo", lambda agent_input: echo(agent_input.prompt))
        >>> result = await invoker.execute("echo", AgentInput(prompt="hi"))
    """

    def __init__(self, agents: dict[str, AgentCallable] | None = None) -> None:
        self._agents: dict[str, AgentCallable] = dict(agents or {})

    def register(self, ref: str, agent: AgentCallable) -> None:
        """Register or replace an agent callable."""
        self._agents[ref] = agent
        logger.debug("agent_registered", agent=ref)

    def unregister(self, ref: str) -> bool:
        """Remove an agent. Returns True if it was registered."""
        return self._agents.pop(ref, None) is not None

    def has_agent(self, ref: str) -> bool:
        return ref in self._agents

    async def execute(
        self,
        ref: str,
        agent_input: AgentInput,
        options: InvocationOptions | None = None,
    ) -> AgentResult:
        agent = self._agents.get(ref)
        if agent is None:
            return AgentResult(
                success=False, error=f"Agent not found: {ref}", error_code="not_found"
            )

        started = time.perf_counter()
        try:
            result = await agent(agent_input)
        except Exception as e:
            logger.warning("agent_execution_failed", agent=ref, error=str(e))
            return AgentResult(
                success=False,
                error=str(e) or type(e).__name__,
                duration_ms=(time.perf_counter() - started) * 1000,
            )

        return AgentResult(
            success=True,
            result=result,
            duration_ms=(time.perf_counter() - started) * 1000,
        )
