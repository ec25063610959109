"""Per-execution context store.

Holds the nested key/value tree shared by the steps, rounds or iterations
of one execution. Reads hand out deep copies so the stored tree only
changes through the store's own operations.
"""

from __future__ import annotations

import copy
import json
from collections import deque
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

from ensemble.config import ContextSettings, get_context_settings
from ensemble.exceptions import NotFoundError, ValidationError

from . import paths

logger = structlog.get_logger()


class ContextSnapshot(BaseModel):
    """Point-in-time copy of an execution context."""

    id: str
    execution_id: str
    label: str | None = None
    data: dict[str, Any]
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SnapshotInfo(BaseModel):
    """Snapshot listing entry without the data payload."""

    id: str
    label: str | None = None
    created_at: datetime


class ExecutionContext(BaseModel):
    """Context tree of one execution."""

    execution_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime


class ContextStore(Protocol):
    """Port for the per-execution context tree."""

    async def create(
        self,
        execution_id: str,
        initial_data: dict[str, Any] | None = None,
        ttl_seconds: int | None = None,
    ) -> ExecutionContext: ...

    async def get(self, execution_id: str) -> ExecutionContext | None: ...

    async def get_path(self, execution_id: str, path: str, default: Any = None) -> Any: ...

    async def set_path(self, execution_id: str, path: str, value: Any) -> None: ...

    async def merge_path(
        self, execution_id: str, partial: dict[str, Any], path: str | None = None
    ) -> None: ...

    async def snapshot(self, execution_id: str, label: str | None = None) -> str: ...

    async def restore(self, execution_id: str, snapshot_id: str) -> None: ...

    async def list_snapshots(self, execution_id: str) -> list[SnapshotInfo]: ...

    async def clear(self, execution_id: str) -> bool: ...


class InMemoryContextStore:
    """Process-local context store with TTL and bounded snapshots."""

    def __init__(self, settings: ContextSettings | None = None) -> None:
        self.settings = settings or get_context_settings()
        self._contexts: dict[str, ExecutionContext] = {}
        self._snapshots: dict[str, deque[ContextSnapshot]] = {}

    async def create(
        self,
        execution_id: str,
        initial_data: dict[str, Any] | None = None,
        ttl_seconds: int | None = None,
    ) -> ExecutionContext:
        """Create (or replace) the context of an execution.

        Args:
            execution_id: Execution the context belongs to
            initial_data: Seed data, deep-copied
            ttl_seconds: Lifetime, defaults to CONTEXT_DEFAULT_TTL_SECONDS

        Returns:
            The created context

        Raises:
            ValidationError: If the seed data violates size or depth limits
        """
        data = copy.deepcopy(initial_data or {})
        self._check_limits(data)

        ttl = ttl_seconds or self.settings.default_ttl_seconds
        context = ExecutionContext(
            execution_id=execution_id,
            data=data,
            expires_at=datetime.now(UTC) + timedelta(seconds=ttl),
        )
        self._contexts[execution_id] = context
        self._snapshots.pop(execution_id, None)

        logger.debug("context_created", execution_id=execution_id, ttl_seconds=ttl)
        return context.model_copy(deep=True)

    async def get(self, execution_id: str) -> ExecutionContext | None:
        context = self._live(execution_id)
        return context.model_copy(deep=True) if context else None

    async def get_path(self, execution_id: str, path: str, default: Any = None) -> Any:
        context = self._require(execution_id)
        return copy.deepcopy(paths.get_path(context.data, path, default))

    async def set_path(self, execution_id: str, path: str, value: Any) -> None:
        """Write a value at a dot path.

        Raises:
            NotFoundError: If the context does not exist or expired
            ValidationError: If the write breaks path or size limits
        """
        context = self._require(execution_id)
        updated = copy.deepcopy(context.data)
        paths.set_path(updated, path, copy.deepcopy(value))
        self._check_limits(updated)
        self._commit(context, updated)

    async def merge_path(
        self, execution_id: str, partial: dict[str, Any], path: str | None = None
    ) -> None:
        """Deep-merge ``partial`` into the context root or into ``path``."""
        context = self._require(execution_id)
        if path is None:
            updated = paths.deep_merge(context.data, partial)
        else:
            updated = copy.deepcopy(context.data)
            existing = paths.get_path(updated, path)
            base = existing if isinstance(existing, dict) else {}
            paths.set_path(updated, path, paths.deep_merge(base, partial))
        self._check_limits(updated)
        self._commit(context, updated)

    async def delete_path(self, execution_id: str, path: str) -> bool:
        context = self._require(execution_id)
        updated = copy.deepcopy(context.data)
        removed = paths.delete_path(updated, path)
        if removed:
            self._commit(context, updated)
        return removed

    async def snapshot(self, execution_id: str, label: str | None = None) -> str:
        """Store a copy of the current tree, evicting the oldest beyond the cap.

        Returns:
            Snapshot id
        """
        context = self._require(execution_id)
        snapshot = ContextSnapshot(
            id=str(uuid4()),
            execution_id=execution_id,
            label=label,
            data=copy.deepcopy(context.data),
        )
        history = self._snapshots.setdefault(
            execution_id, deque(maxlen=self.settings.max_snapshots)
        )
        history.append(snapshot)

        logger.debug(
            "context_snapshot_created",
            execution_id=execution_id,
            snapshot_id=snapshot.id,
            label=label,
        )
        return snapshot.id

    async def restore(self, execution_id: str, snapshot_id: str) -> None:
        context = self._require(execution_id)
        for snapshot in self._snapshots.get(execution_id, ()):
            if snapshot.id == snapshot_id:
                self._commit(context, copy.deepcopy(snapshot.data))
                logger.info(
                    "context_restored",
                    execution_id=execution_id,
                    snapshot_id=snapshot_id,
                )
                return
        raise NotFoundError("Snapshot", snapshot_id)

    async def list_snapshots(self, execution_id: str) -> list[SnapshotInfo]:
        self._require(execution_id)
        return [
            SnapshotInfo(id=s.id, label=s.label, created_at=s.created_at)
            for s in self._snapshots.get(execution_id, ())
        ]

    async def extend_ttl(self, execution_id: str, ttl_seconds: int) -> bool:
        context = self._live(execution_id)
        if context is None:
            return False
        context.expires_at = datetime.now(UTC) + timedelta(seconds=ttl_seconds)
        return True

    async def clear(self, execution_id: str) -> bool:
        self._snapshots.pop(execution_id, None)
        removed = self._contexts.pop(execution_id, None) is not None
        if removed:
            logger.debug("context_cleared", execution_id=execution_id)
        return removed

    def _live(self, execution_id: str) -> ExecutionContext | None:
        context = self._contexts.get(execution_id)
        if context is None:
            return None
        if context.expires_at <= datetime.now(UTC):
            logger.debug("context_expired", execution_id=execution_id)
            self._contexts.pop(execution_id, None)
            self._snapshots.pop(execution_id, None)
            return None
        return context

    def _require(self, execution_id: str) -> ExecutionContext:
        context = self._live(execution_id)
        if context is None:
            raise NotFoundError("Context", execution_id)
        return context

    def _commit(self, context: ExecutionContext, data: dict[str, Any]) -> None:
        context.data = data
        context.updated_at = datetime.now(UTC)

    def _check_limits(self, data: dict[str, Any]) -> None:
        depth = paths.nesting_depth(data)
        if depth > self.settings.max_nesting_depth:
            raise ValidationError(
                f"Context nesting depth {depth} exceeds maximum "
                f"{self.settings.max_nesting_depth}"
            )
        size = len(json.dumps(data, default=str))
        if size > self.settings.max_context_size:
            raise ValidationError(
                f"Context size {size} bytes exceeds maximum {self.settings.max_context_size}"
            )
