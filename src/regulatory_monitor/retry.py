"""Retry policy and the ``with_retry`` combinator used around adapter calls."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple, Type, TypeVar

from .errors import ConnectivityError
from .logging_config import get_logger

logger = get_logger("retry")

T = TypeVar("T")


def full_jitter(delay: float) -> float:
    return random.uniform(0, delay)


def no_jitter(delay: float) -> float:
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: attempt ``n`` waits ``min(base * exp**(n-1), max)``, jittered."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: Callable[[float], float] = full_jitter

    @classmethod
    def from_settings(cls, settings: Optional[Mapping[str, Any]]) -> "RetryPolicy":
        settings = settings or {}
        jitter = full_jitter if settings.get("jitter", True) else no_jitter
        return cls(
            max_attempts=int(settings.get("max_attempts", cls.max_attempts)),
            base_delay=float(settings.get("base_delay", cls.base_delay)),
            max_delay=float(settings.get("max_delay", cls.max_delay)),
            exponential_base=float(settings.get("exponential_base", cls.exponential_base)),
            jitter=jitter,
        )

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        delay = self.jitter(delay)
        if retry_after is not None:
            delay = max(delay, min(retry_after, self.max_delay))
        return delay


async def with_retry(
    policy: RetryPolicy,
    operation: Callable[[], Awaitable[T]],
    *,
    retry_on: Tuple[Type[BaseException], ...] = (ConnectivityError,),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Only exceptions in ``retry_on`` whose ``retryable`` attribute is not False
    are retried; anything else propagates on the first occurrence. Attempts
    are strictly sequential.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except retry_on as exc:
            if not getattr(exc, "retryable", True) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt, getattr(exc, "retry_after", None))
            logger.warning(
                "%s failed (%s). Retrying in %.2fs (attempt %s/%s)",
                description,
                exc,
                delay,
                attempt,
                policy.max_attempts,
            )
            await sleep(delay)
            attempt += 1
