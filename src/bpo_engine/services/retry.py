from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from loguru import logger

from bpo_engine.errors import ConnectorRejectedError, PipelineValidationError

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def default_retryable(exc: BaseException) -> bool:
    """Retry everything except failures that are known to be permanent."""

    return not isinstance(exc, (PipelineValidationError, ConnectorRejectedError))


@dataclass(frozen=True)
class RetryPolicy:
    """Fixed-delay bounded retry: `max_attempts` retries after the first call."""

    max_attempts: int = 3
    delay_seconds: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")

    @property
    def total_calls(self) -> int:
        return self.max_attempts + 1


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    retryable: Callable[[BaseException], bool] = default_retryable,
    sleep: Sleep = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Invoke `operation` until it succeeds or the attempt budget is spent.

    The wrapped operation must be safe to call more than once. When every
    attempt fails the last exception is re-raised as-is.
    """

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if not retryable(exc):
                logger.warning(f"{label} failed permanently on attempt {attempt}: {exc}")
                raise
            if attempt >= policy.total_calls:
                logger.error(f"{label} failed after {attempt} attempts: {exc}")
                raise
            logger.warning(
                f"{label} attempt {attempt}/{policy.total_calls} failed: "
                f"{type(exc).__name__}: {exc}; retrying in {policy.delay_seconds}s"
            )
            await sleep(policy.delay_seconds)


class RetryExecutor:
    """Policy-bound wrapper handed to stages so they share one retry budget."""

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        retryable: Callable[[BaseException], bool] = default_retryable,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.policy = policy
        self.retryable = retryable
        self.sleep = sleep

    async def run(self, operation: Callable[[], Awaitable[T]], *, label: str = "operation") -> T:
        return await run_with_retry(
            operation,
            self.policy,
            retryable=self.retryable,
            sleep=self.sleep,
            label=label,
        )
