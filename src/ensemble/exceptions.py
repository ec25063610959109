"""Exception taxonomy for workflow and protocol execution."""

from __future__ import annotations


class EnsembleError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Error description
        cause: Original exception that caused this error
        code: Stable machine-readable error code
    """

    code = "ENSEMBLE_ERROR"

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        """Initialize engine error.

        Args:
            message: Error description
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.message = message
        self.cause = cause


class ValidationError(EnsembleError):
    """Definition, request or configuration is invalid.

    Raised synchronously before any execution starts. Carries every
    violation found, not only the first one.
    """

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, cause)
        self.errors = errors or [message]


class DependencyError(ValidationError):
    """Dependency references are cyclic or point at unknown steps."""

    code = "DEPENDENCY_ERROR"

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        cycles: list[list[str]] | None = None,
    ) -> None:
        super().__init__(message, errors)
        self.cycles = cycles or []


class AgentInvocationError(EnsembleError):
    """Agent invoker reported a failure.

    Retryable according to the owning step's retry policy.
    """

    code = "AGENT_INVOCATION_ERROR"

    def __init__(self, agent: str, message: str) -> None:
        super().__init__(message)
        self.agent = agent


class TemplateError(EnsembleError):
    """Prompt template has unresolved required variables."""

    code = "TEMPLATE_ERROR"

    def __init__(self, message: str, missing: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing = missing or []


class OperationTimeoutError(EnsembleError):
    """A pending operation exceeded its time budget."""

    code = "TIMEOUT"

    def __init__(self, operation: str, timeout_ms: float) -> None:
        super().__init__(f"{operation} timed out after {int(timeout_ms)}ms")
        self.operation = operation
        self.timeout_ms = timeout_ms


class CapacityError(EnsembleError):
    """Engine cannot admit more work (wait queue full)."""

    code = "CAPACITY_ERROR"


class NotFoundError(EnsembleError):
    """Requested execution, result, context or snapshot does not exist."""

    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} not found: {resource_id}")
        self.resource = resource
        self.resource_id = resource_id


class StateError(EnsembleError):
    """Operation is not valid for the current status."""

    code = "INVALID_STATE"

    def __init__(self, resource: str, current_state: str, action: str) -> None:
        super().__init__(f"Cannot {action} {resource} in state '{current_state}'")
        self.resource = resource
        self.current_state = current_state
        self.action = action
