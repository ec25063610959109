"""Runtime settings for the workflow engine and collaboration protocols.

Each concern reads its own environment prefix so deployments can tune the
scheduler, orchestration patterns and protocols independently.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkflowEngineSettings(BaseSettings):
    """Workflow scheduler limits and defaults."""

    max_concurrent_workflows: int = Field(
        default=10,
        ge=1,
        description="Maximum workflows running or paused at the same time",
    )
    enable_queue: bool = Field(
        default=True,
        description="Queue workflows that exceed the concurrency limit",
    )
    max_queue_size: int = Field(
        default=100,
        ge=0,
        description="Maximum number of queued workflows",
    )
    queue_poll_interval_ms: int = Field(
        default=1000,
        gt=0,
        description="Interval of the background dequeue loop",
    )
    max_workflow_steps: int = Field(
        default=50,
        ge=1,
        description="Maximum number of steps in one definition",
    )
    enable_parallel_execution: bool = Field(
        default=True,
        description="Run steps of one dependency level concurrently",
    )
    max_parallel_steps: int = Field(
        default=5,
        ge=1,
        description="Maximum steps of one workflow running at the same time",
    )
    workflow_timeout_ms: int = Field(
        default=600_000,
        gt=0,
        description="Default wall-clock budget of a workflow execution",
    )
    state_ttl_seconds: int = Field(
        default=86_400,
        gt=0,
        description="TTL of persisted execution state",
    )

    # Default retry policy for steps without their own
    default_max_retries: int = Field(default=3, ge=0)
    default_initial_delay_ms: int = Field(default=1000, ge=0)
    default_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    default_max_delay_ms: int = Field(default=30_000, ge=0)

    model_config = SettingsConfigDict(
        env_prefix="WORKFLOW_",
        env_file=".env",
        extra="ignore",
    )


class OrchestrationSettings(BaseSettings):
    """Flat task-list orchestration settings."""

    default_timeout_ms: int = Field(
        default=300_000,
        gt=0,
        description="Per-task timeout when the request does not set one",
    )
    max_parallel_tasks: int | None = Field(
        default=None,
        ge=1,
        description="Default parallelism cap; None means unbounded",
    )
    max_map_reduce_items: int = Field(
        default=100,
        ge=1,
        description="Maximum items accepted by a map-reduce request",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATION_",
        env_file=".env",
        extra="ignore",
    )


class DiscussionSettings(BaseSettings):
    """Multi-agent discussion protocol settings."""

    default_max_rounds: int = Field(default=5, ge=1)
    max_participants: int = Field(default=10, ge=1)
    default_convergence_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    default_consensus_strategy: str = Field(default="majority")
    default_timeout_ms: int = Field(
        default=900_000,
        gt=0,
        description="Overall discussion budget, checked between rounds",
    )
    participant_timeout_ms: int = Field(
        default=120_000,
        gt=0,
        description="Timeout of a single participant or facilitator call",
    )
    max_parallel_participants: int = Field(default=5, ge=1)

    model_config = SettingsConfigDict(
        env_prefix="DISCUSSION_",
        env_file=".env",
        extra="ignore",
    )


class CritiqueSettings(BaseSettings):
    """Self-critique protocol settings."""

    default_max_iterations: int = Field(default=5, ge=1, le=10)
    default_quality_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    default_timeout_ms: int = Field(
        default=600_000,
        gt=0,
        description="Overall self-critique budget, checked between iterations",
    )
    generation_timeout_ms: int = Field(default=120_000, gt=0)
    evaluation_timeout_ms: int = Field(default=60_000, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="CRITIQUE_",
        env_file=".env",
        extra="ignore",
    )


class ContextSettings(BaseSettings):
    """Execution context store limits."""

    default_ttl_seconds: int = Field(default=3600, gt=0)
    max_nesting_depth: int = Field(default=10, ge=1)
    max_snapshots: int = Field(default=10, ge=1)
    max_context_size: int = Field(
        default=10 * 1024 * 1024,
        gt=0,
        description="Maximum JSON-encoded size of one context in bytes",
    )

    model_config = SettingsConfigDict(
        env_prefix="CONTEXT_",
        env_file=".env",
        extra="ignore",
    )


class CacheSettings(BaseSettings):
    """Redis settings for the durable state store."""

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    redis_max_connections: int = Field(
        default=20,
        description="Maximum number of Redis connections",
    )
    key_prefix: str = Field(
        default="ensemble",
        description="Prefix prepended to every key written by the state store",
    )

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        env_file=".env",
        extra="ignore",
    )


class LoggingSettings(BaseSettings):
    """Structured logging settings."""

    level: str = Field(default="INFO")
    json_logs: bool = Field(
        default=False,
        description="Render JSON lines instead of the console renderer",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        extra="ignore",
    )


@lru_cache
def get_workflow_settings() -> WorkflowEngineSettings:
    """Get cached workflow engine settings."""
    return WorkflowEngineSettings()


@lru_cache
def get_orchestration_settings() -> OrchestrationSettings:
    """Get cached orchestration settings."""
    return OrchestrationSettings()


@lru_cache
def get_discussion_settings() -> DiscussionSettings:
    """Get cached discussion settings."""
    return DiscussionSettings()


@lru_cache
def get_critique_settings() -> CritiqueSettings:
    """Get cached self-critique settings."""
    return CritiqueSettings()


@lru_cache
def get_context_settings() -> ContextSettings:
    """Get cached context store settings."""
    return ContextSettings()


@lru_cache
def get_cache_settings() -> CacheSettings:
    """Get cached Redis settings."""
    return CacheSettings()


@lru_cache
def get_logging_settings() -> LoggingSettings:
    """Get cached logging settings."""
    return LoggingSettings()
