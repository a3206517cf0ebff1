# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Retry with exponential backoff for storage operations.

Only TransientStorageError (and per-attempt timeouts) are retried;
every other error propagates on the first occurrence.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import structlog

from snapkeep.config import SnapkeepConfig
from snapkeep.exceptions import TransferRetriesExhausted, TransientStorageError

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry behaviour for one chunk or request.

    Attributes:
        max_attempts: Maximum number of attempts (including first try)
        base_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound on any single delay, in seconds
        timeout: Per-attempt timeout in seconds, None for no limit
        jitter: Whether to add +/-25% random variation
    """

    max_attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    timeout: float | None = 120.0
    jitter: bool = True

    @classmethod
    def from_config(cls, config: SnapkeepConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            timeout=config.chunk_timeout_seconds,
        )


def calculate_delay(attempt: int, policy: RetryPolicy) -> float:
    """
    Delay before the retry following `attempt` (0-based), in seconds.

    Examples:
        >>> calculate_delay(3, RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False))
        5.0
    """
    delay = min(policy.base_delay * (2 ** attempt), policy.max_delay)
    if policy.jitter:
        delay *= 0.75 + random.random() * 0.5
    return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    operation_name: str = "operation",
    on_retry: Callable[[int, BaseException], None] | None = None,
    **log_context,
) -> T:
    """
    Await `operation()` until it succeeds or the retry budget runs out.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt
        policy: Retry policy
        operation_name: Name for logging
        on_retry: Called with (attempt, error) before each backoff sleep

    Raises:
        TransferRetriesExhausted: After max_attempts transient failures
        Any non-transient error raised by the operation
    """
    last_error: BaseException | None = None

    for attempt in range(policy.max_attempts):
        try:
            if policy.timeout is not None:
                return await asyncio.wait_for(operation(), timeout=policy.timeout)
            return await operation()
        except (TransientStorageError, asyncio.TimeoutError) as e:
            last_error = e
            logger.warning(
                "storage_attempt_failed",
                operation=operation_name,
                attempt=attempt + 1,
                max_attempts=policy.max_attempts,
                error=str(e) or type(e).__name__,
                **log_context,
            )
            if attempt < policy.max_attempts - 1:
                if on_retry is not None:
                    on_retry(attempt + 1, e)
                await asyncio.sleep(calculate_delay(attempt, policy))

    logger.error(
        "storage_retries_exhausted",
        operation=operation_name,
        max_attempts=policy.max_attempts,
        **log_context,
    )
    raise TransferRetriesExhausted(
        f"{operation_name} failed after {policy.max_attempts} attempts",
        details={
            "operation": operation_name,
            "attempts": policy.max_attempts,
            "last_error": str(last_error) or type(last_error).__name__,
            **log_context,
        },
    ) from last_error
