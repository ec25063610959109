"""Durable execution state store.

Kept apart from the per-execution context store: this port owns the
scheduler's state machine records and protocol results, which must survive
a process restart.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

import structlog
from pydantic import BaseModel

from ensemble.cache.redis_client import RedisClient
from ensemble.config import get_cache_settings, get_workflow_settings
from ensemble.workflow.models import WorkflowDefinition, WorkflowExecutionState

logger = structlog.get_logger()


class StateStore(Protocol):
    """Port for persisted workflow state and protocol results."""

    async def save_state(self, state: WorkflowExecutionState) -> None: ...

    async def load_state(self, execution_id: str) -> WorkflowExecutionState | None: ...

    async def list_states(self, user_id: str | None = None) -> list[WorkflowExecutionState]: ...

    async def save_definition(self, execution_id: str, definition: WorkflowDefinition) -> None: ...

    async def load_definition(self, execution_id: str) -> WorkflowDefinition | None: ...

    async def save_result(self, kind: str, result_id: str, result: BaseModel) -> None: ...

    async def load_result(self, kind: str, result_id: str) -> dict[str, Any] | None: ...

    async def delete(self, execution_id: str) -> bool: ...


class InMemoryStateStore:
    """Process-local store keeping JSON documents.

    Records are serialized on write so a read returns exactly what was
    persisted, never a live object shared with the scheduler.
    """

    def __init__(self) -> None:
        self._states: dict[str, str] = {}
        self._definitions: dict[str, str] = {}
        self._results: dict[tuple[str, str], str] = {}

    async def save_state(self, state: WorkflowExecutionState) -> None:
        self._states[state.execution_id] = state.model_dump_json()

    async def load_state(self, execution_id: str) -> WorkflowExecutionState | None:
        raw = self._states.get(execution_id)
        return WorkflowExecutionState.model_validate_json(raw) if raw else None

    async def list_states(self, user_id: str | None = None) -> list[WorkflowExecutionState]:
        states = [WorkflowExecutionState.model_validate_json(raw) for raw in self._states.values()]
        if user_id is not None:
            states = [s for s in states if s.user_id == user_id]
        return states

    async def save_definition(self, execution_id: str, definition: WorkflowDefinition) -> None:
        self._definitions[execution_id] = definition.model_dump_json()

    async def load_definition(self, execution_id: str) -> WorkflowDefinition | None:
        raw = self._definitions.get(execution_id)
        return WorkflowDefinition.model_validate_json(raw) if raw else None

    async def save_result(self, kind: str, result_id: str, result: BaseModel) -> None:
        self._results[(kind, result_id)] = result.model_dump_json()

    async def load_result(self, kind: str, result_id: str) -> dict[str, Any] | None:
        raw = self._results.get((kind, result_id))
        return json.loads(raw) if raw else None

    async def delete(self, execution_id: str) -> bool:
        self._definitions.pop(execution_id, None)
        return self._states.pop(execution_id, None) is not None


class RedisStateStore:
    """Redis-backed store.

    Keys:
        {prefix}:workflow:state:{execution_id}       -> state JSON (SETEX)
        {prefix}:workflow:definition:{execution_id}  -> definition JSON (SETEX)
        {prefix}:workflow:user:{user_id}             -> set of execution ids
        {prefix}:workflow:executions                 -> set of all execution ids
        {prefix}:{kind}:result:{result_id}           -> protocol result JSON (SETEX)
    """

    def __init__(
        self,
        redis_client: RedisClient,
        ttl_seconds: int | None = None,
        key_prefix: str | None = None,
    ) -> None:
        """Initialize Redis state store.

        Args:
            redis_client: Connected Redis client wrapper
            ttl_seconds: Record TTL, defaults to WORKFLOW_STATE_TTL_SECONDS
            key_prefix: Key namespace, defaults to CACHE_KEY_PREFIX
        """
        self.redis = redis_client
        self.ttl = ttl_seconds or get_workflow_settings().state_ttl_seconds
        self.prefix = key_prefix or get_cache_settings().key_prefix

    def _state_key(self, execution_id: str) -> str:
        return f"{self.prefix}:workflow:state:{execution_id}"

    def _definition_key(self, execution_id: str) -> str:
        return f"{self.prefix}:workflow:definition:{execution_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.prefix}:workflow:user:{user_id}"

    def _index_key(self) -> str:
        return f"{self.prefix}:workflow:executions"

    def _result_key(self, kind: str, result_id: str) -> str:
        return f"{self.prefix}:{kind}:result:{result_id}"

    async def save_state(self, state: WorkflowExecutionState) -> None:
        """Persist state and index it by user.

        Args:
            state: Execution state to persist
        """
        client = self.redis.client
        await client.setex(self._state_key(state.execution_id), self.ttl, state.model_dump_json())
        await client.sadd(self._user_key(state.user_id), state.execution_id)
        await client.expire(self._user_key(state.user_id), self.ttl)
        await client.sadd(self._index_key(), state.execution_id)
        logger.debug(
            "workflow_state_saved",
            execution_id=state.execution_id,
            status=str(state.status),
        )

    async def load_state(self, execution_id: str) -> WorkflowExecutionState | None:
        raw = await self.redis.client.get(self._state_key(execution_id))
        if raw is None:
            return None
        return WorkflowExecutionState.model_validate_json(raw)

    async def list_states(self, user_id: str | None = None) -> list[WorkflowExecutionState]:
        """List persisted states, dropping index entries whose record expired."""
        client = self.redis.client
        index_key = self._user_key(user_id) if user_id is not None else self._index_key()
        execution_ids = sorted(await client.smembers(index_key))

        states: list[WorkflowExecutionState] = []
        for execution_id in execution_ids:
            state = await self.load_state(execution_id)
            if state is None:
                await client.srem(index_key, execution_id)
                continue
            states.append(state)
        return states

    async def save_definition(self, execution_id: str, definition: WorkflowDefinition) -> None:
        await self.redis.client.setex(
            self._definition_key(execution_id), self.ttl, definition.model_dump_json()
        )

    async def load_definition(self, execution_id: str) -> WorkflowDefinition | None:
        raw = await self.redis.client.get(self._definition_key(execution_id))
        if raw is None:
            return None
        return WorkflowDefinition.model_validate_json(raw)

    async def save_result(self, kind: str, result_id: str, result: BaseModel) -> None:
        await self.redis.client.setex(
            self._result_key(kind, result_id), self.ttl, result.model_dump_json()
        )
        logger.debug("result_saved", kind=kind, result_id=result_id)

    async def load_result(self, kind: str, result_id: str) -> dict[str, Any] | None:
        raw = await self.redis.client.get(self._result_key(kind, result_id))
        if raw is None:
            return None
        loaded: dict[str, Any] = json.loads(raw)
        return loaded

    async def delete(self, execution_id: str) -> bool:
        client = self.redis.client
        state = await self.load_state(execution_id)
        if state is not None:
            await client.srem(self._user_key(state.user_id), execution_id)
        await client.srem(self._index_key(), execution_id)
        await client.delete(self._definition_key(execution_id))
        deleted = await client.delete(self._state_key(execution_id))
        return bool(deleted)
