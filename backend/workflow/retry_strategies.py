"""Step and action retry strategies.

Provides the backoff policies a step or action may declare:
- Fixed delay
- Linear backoff (delay * attempt)
- Exponential backoff (delay * 2^(attempt-1)), optionally capped
- Selective retry via retry-on / do-not-retry-on error lists

``max_attempts`` counts total invocations, so a policy with
``max_attempts=3`` invokes the handler at most three times.

Usage:
    strategy = RetryStrategy.from_policy(step.retry)
    result, attempts = await execute_with_retry(invoke, strategy)
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import structlog

from core.constants import RetryStrategyType

logger = structlog.get_logger(__name__)


@dataclass
class RetryStrategy:
    """Configurable retry strategy for step and action execution."""
    policy: RetryStrategyType = RetryStrategyType.FIXED
    max_attempts: int = 1
    base_delay: float = 0.0
    max_delay: Optional[float] = None
    jitter: bool = False
    jitter_range: float = 0.5
    retry_on_errors: List[str] = field(default_factory=list)
    do_not_retry_on_errors: List[str] = field(default_factory=list)

    @classmethod
    def none(cls) -> "RetryStrategy":
        """Single attempt, no retries."""
        return cls(max_attempts=1)

    @classmethod
    def fixed(cls, max_attempts: int = 3, delay: float = 5.0) -> "RetryStrategy":
        return cls(policy=RetryStrategyType.FIXED, max_attempts=max_attempts, base_delay=delay)

    @classmethod
    def linear(cls, max_attempts: int = 3, base_delay: float = 2.0, max_delay: Optional[float] = None) -> "RetryStrategy":
        """Linear backoff: delay = base_delay * attempt_number."""
        return cls(
            policy=RetryStrategyType.LINEAR,
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=max_delay,
        )

    @classmethod
    def exponential(
        cls,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: Optional[float] = None,
        jitter: bool = False,
    ) -> "RetryStrategy":
        """Exponential backoff with optional jitter."""
        return cls(
            policy=RetryStrategyType.EXPONENTIAL,
            max_attempts=max_attempts,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
        )

    @classmethod
    def from_policy(cls, policy: Any) -> "RetryStrategy":
        """Build from a step ``RetryPolicy``; a disabled policy means one attempt."""
        if policy is None or not policy.is_enabled:
            return cls.none()
        return cls(
            policy=policy.strategy,
            max_attempts=policy.max_attempts,
            base_delay=policy.retry_delay or 0.0,
            max_delay=policy.max_delay,
            retry_on_errors=list(policy.retry_on_errors),
            do_not_retry_on_errors=list(policy.do_not_retry_on_errors),
        )

    @classmethod
    def from_action_policy(cls, policy: Any) -> "RetryStrategy":
        """Build from an ``ActionRetryPolicy``; no policy means one attempt."""
        if policy is None:
            return cls.none()
        return cls(
            policy=policy.strategy,
            max_attempts=policy.max_attempts,
            base_delay=policy.retry_delay or 0.0,
        )

    def compute_delay(self, attempt: int) -> float:
        """Delay before the retry that follows failed ``attempt`` (1-based)."""
        if self.policy == RetryStrategyType.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        elif self.policy == RetryStrategyType.LINEAR:
            delay = self.base_delay * attempt
        else:
            # Fixed and Custom both use the configured delay as-is
            delay = self.base_delay

        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))

        return round(delay, 3)

    def should_retry(self, attempt: int, error_type: Optional[str] = None, message: Optional[str] = None) -> bool:
        """Whether a failure on ``attempt`` (1-based) warrants another attempt."""
        if attempt >= self.max_attempts:
            return False
        if self.do_not_retry_on_errors and _matches(self.do_not_retry_on_errors, error_type, message):
            return False
        if self.retry_on_errors:
            return _matches(self.retry_on_errors, error_type, message)
        return True


def _matches(patterns: List[str], error_type: Optional[str], message: Optional[str]) -> bool:
    """Match by exact error type or case-insensitive substring of the message."""
    text = (message or "").lower()
    for pattern in patterns:
        if error_type and pattern == error_type:
            return True
        if pattern and pattern.lower() in text:
            return True
    return False


async def execute_with_retry(
    func: Callable[[int], Awaitable[Any]],
    strategy: RetryStrategy,
    on_retry: Optional[Callable] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Tuple[Any, int]:
    """Invoke ``func(attempt)`` until it succeeds or the strategy gives up.

    ``func`` returns a result object exposing ``success``, ``error`` and
    ``error_type`` (a ``HandlerResult``); failures are values, not exceptions.

    Args:
        func: Async callable receiving the 1-based attempt number.
        strategy: RetryStrategy instance.
        on_retry: Optional callback(attempt, result, delay) called before each retry.
        sleep: Awaitable used to wait between attempts.

    Returns:
        Tuple of (last result, number of attempts made).
    """
    attempt = 0
    while True:
        attempt += 1
        result = await func(attempt)
        if result.success:
            return result, attempt

        if not strategy.should_retry(attempt, result.error_type, result.error):
            return result, attempt

        delay = strategy.compute_delay(attempt)
        logger.info(
            "retrying",
            attempt=attempt,
            max_attempts=strategy.max_attempts,
            delay=delay,
            error=result.error,
        )
        if on_retry:
            outcome = on_retry(attempt, result, delay)
            if asyncio.iscoroutine(outcome):
                await outcome
        if delay > 0:
            await sleep(delay)
