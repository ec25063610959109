"""Tests for the agent invocation port."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from ensemble.agents.invoker import (
    AgentInput,
    AgentResult,
    CallableAgentInvoker,
    InvocationOptions,
    invoke_agent,
)


class TestInvokeAgent:
    """Tests for invoke_agent."""

    async def test_success_passes_options(self) -> None:
        invoker = AsyncMock()
        invoker.execute.return_value = AgentResult(success=True, result="ok")

        result = await invoke_agent(
            invoker, "writer", AgentInput(prompt="hi"), timeout_ms=500, metadata={"step_id": "a"}
        )

        assert result.result == "ok"
        _, _, options = invoker.execute.call_args.args
        assert options == InvocationOptions(timeout_ms=500, metadata={"step_id": "a"})

    async def test_timeout_becomes_failed_result(self) -> None:
        async def slow(agent_input: AgentInput) -> str:
            await asyncio.sleep(5)
            return "late"

        invoker = CallableAgentInvoker({"slow": slow})

        result = await invoke_agent(invoker, "slow", AgentInput(prompt="hi"), timeout_ms=20)

        assert result.success is False
        assert result.timed_out is True
        assert result.error == "Agent 'slow' timed out after 20ms"

    async def test_raising_invoker_becomes_failed_result(self) -> None:
        invoker = AsyncMock()
        invoker.execute.side_effect = ConnectionError("reset")

        result = await invoke_agent(invoker, "writer", AgentInput(prompt="hi"))

        assert result.success is False
        assert result.error == "reset"
        assert result.timed_out is False


class TestCallableAgentInvoker:
    """Tests for CallableAgentInvoker."""

    async def test_registered_agent(self) -> None:
        invoker = CallableAgentInvoker()

        async def echo(agent_input: AgentInput) -> str:
            return agent_input.prompt.upper()

        invoker.register("echo", echo)
        result = await invoker.execute("echo", AgentInput(prompt="hi"))

        assert result.success is True
        assert result.result == "HI"
        assert invoker.has_agent("echo") is True

    async def test_unknown_agent(self) -> None:
        result = await CallableAgentInvoker().execute("ghost", AgentInput(prompt="hi"))

        assert result.success is False
        assert result.error_code == "not_found"

    async def test_agent_exception_reported(self) -> None:
        async def broken(agent_input: AgentInput) -> str:
            raise RuntimeError("model down")

        invoker = CallableAgentInvoker({"broken": broken})
        result = await invoker.execute("broken", AgentInput(prompt="hi"))

        assert result.success is False
        assert result.error == "model down"
        assert invoker.unregister("broken") is True
        assert invoker.unregister("broken") is False
