"""Agent invocation port and in-process invoker."""

from .invoker import (
    AgentCallable,
    AgentInput,
    AgentInvoker,
    AgentResult,
    CallableAgentInvoker,
    InvocationOptions,
    invoke_agent,
)

__all__ = [
    "AgentCallable",
    "AgentInput",
    "AgentInvoker",
    "AgentResult",
    "CallableAgentInvoker",
    "InvocationOptions",
    "invoke_agent",
]
