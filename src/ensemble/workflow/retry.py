"""Retry policy adapter over tenacity."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from ensemble.exceptions import AgentInvocationError, OperationTimeoutError

from .models import RetryPolicy

SleepFn = Callable[[float], Awaitable[None]]

RETRYABLE_ERRORS = (AgentInvocationError, OperationTimeoutError)


def wait_for_policy(policy: RetryPolicy) -> Callable[[RetryCallState], float]:
    """Tenacity wait strategy returning ``policy.delay_ms`` in seconds."""

    def wait(retry_state: RetryCallState) -> float:
        return policy.delay_ms(retry_state.attempt_number) / 1000

    return wait


def build_retrying(policy: RetryPolicy, sleep: SleepFn = asyncio.sleep) -> AsyncRetrying:
    """Build a tenacity controller for a step's retry policy.

    The k-th retry waits ``policy.delay_ms(k)``. Only agent failures and
    timeouts are retried; every other error propagates on the first attempt.

    Args:
        policy: Step retry policy
        sleep: Coroutine used to wait between attempts, in seconds

    Returns:
        AsyncRetrying that re-raises the last error once retries run out
    """
    return AsyncRetrying(
        stop=stop_after_attempt(policy.max_retries + 1),
        wait=wait_for_policy(policy),
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        sleep=sleep,
        reraise=True,
    )
