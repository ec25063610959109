"""Per-execution context store."""

from .store import (
    ContextSnapshot,
    ContextStore,
    ExecutionContext,
    InMemoryContextStore,
    SnapshotInfo,
)

__all__ = [
    "ContextSnapshot",
    "ContextStore",
    "ExecutionContext",
    "InMemoryContextStore",
    "SnapshotInfo",
]
