"""Durable execution state store."""

from .store import InMemoryStateStore, RedisStateStore, StateStore

__all__ = ["InMemoryStateStore", "RedisStateStore", "StateStore"]
