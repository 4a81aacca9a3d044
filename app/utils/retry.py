"""
Shared retry/backoff utility.

One place for exponential backoff with jitter. Callers supply a classifier
that sorts each exception into a RetryClass, and one RetryPolicy per class
that should be retried. The provider API client and the database retry
decorator both build on this so every call site backs off the same way.

Usage:
    response = await retry_async(
        lambda: client.get(url),
        classify=classify_http_error,
        policies={RetryClass.TRANSIENT: RetryPolicy(max_retries=3)},
    )
"""

import asyncio
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryClass(str, Enum):
    """How a failure should be treated by the retry loop."""

    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    FATAL = "fatal"


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Backoff parameters for one class of failure."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.25  # fraction of the computed delay added at random

    def backoff(self, attempt: int, rng: random.Random | None = None) -> float:
        """
        Delay before retry number `attempt` (1-based).

        Doubles from base_delay, capped at max_delay, then adds up to
        `jitter * delay` of random spread.
        """
        exponent = max(attempt - 1, 0)
        delay = min(self.max_delay, self.base_delay * (2**exponent))
        spread = (rng or random).uniform(0, delay * self.jitter) if self.jitter > 0 else 0.0
        return delay + spread


@dataclass(slots=True)
class RetryDecision:
    """Classifier output: the class and an optional server-supplied delay."""

    retry_class: RetryClass
    delay_hint: float | None = None


class RetryExhausted(Exception):
    """Raised when a retryable failure outlives its policy's budget."""

    def __init__(self, retry_class: RetryClass, attempts: int, last_error: BaseException):
        super().__init__(
            f"Gave up after {attempts} {retry_class.value} retries: {last_error}"
        )
        self.retry_class = retry_class
        self.attempts = attempts
        self.last_error = last_error


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    classify: Callable[[BaseException], RetryDecision],
    policies: Mapping[RetryClass, RetryPolicy],
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: random.Random | None = None,
    max_delay_hint: float | None = None,
    operation_name: str = "operation",
) -> T:
    """
    Run `operation` until it succeeds, a FATAL failure occurs, or a budget runs out.

    Each retry class keeps its own attempt counter. A class without a policy
    is never retried. FATAL failures propagate unchanged; exhausted budgets
    raise RetryExhausted chained to the last error.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        classify: Maps an exception to a RetryDecision
        policies: Backoff policy per retryable class
        sleep: Awaitable sleep (injectable for tests)
        rng: Random source for jitter
        max_delay_hint: Upper bound applied to server-supplied delays
        operation_name: Label used in log lines
    """
    attempts: dict[RetryClass, int] = {}

    while True:
        try:
            return await operation()
        except Exception as exc:
            decision = classify(exc)
            policy = policies.get(decision.retry_class)

            if decision.retry_class is RetryClass.FATAL or policy is None:
                raise

            attempt = attempts.get(decision.retry_class, 0) + 1
            attempts[decision.retry_class] = attempt

            if attempt > policy.max_retries:
                logger.error(
                    "Retry budget exhausted",
                    operation=operation_name,
                    retry_class=decision.retry_class.value,
                    attempts=attempt - 1,
                    error=str(exc),
                )
                raise RetryExhausted(decision.retry_class, attempt - 1, exc) from exc

            if decision.delay_hint is not None:
                delay = float(decision.delay_hint)
                if max_delay_hint is not None:
                    delay = min(delay, max_delay_hint)
            else:
                delay = policy.backoff(attempt, rng)

            logger.warning(
                "Retrying after failure",
                operation=operation_name,
                retry_class=decision.retry_class.value,
                attempt=attempt,
                max_retries=policy.max_retries,
                delay_seconds=round(delay, 2),
                error=str(exc),
            )
            await sleep(delay)
