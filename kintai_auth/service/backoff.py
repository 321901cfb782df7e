from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterator, Optional, Tuple, Type, TypeVar

from kintai_auth.logging import get_logger

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

logger = get_logger(__name__)


@dataclass
class BackoffPolicy:
    """Bounded retry schedule shared by the token poller and forced sign-out.

    ``delay_ms(attempt)`` is the wait *after* the given 1-based attempt:
    ``base_delay_ms * multiplier ** (attempt - 1)`` capped at
    ``max_delay_ms``, plus up to ``jitter_ms`` of random jitter. ``sleep`` is
    injectable so tests can record waits instead of sleeping.
    """

    max_attempts: int = 3
    base_delay_ms: int = 500
    multiplier: float = 1.0
    max_delay_ms: Optional[int] = None
    jitter_ms: int = 0
    sleep: Sleep = field(default=asyncio.sleep, repr=False)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.jitter_ms < 0:
            raise ValueError("delays must not be negative")

    def delay_ms(self, attempt: int) -> float:
        delay = self.base_delay_ms * (self.multiplier ** max(attempt - 1, 0))
        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)
        if self.jitter_ms:
            delay += self.rng.uniform(0, self.jitter_ms)
        return delay

    def attempts(self) -> Iterator[int]:
        return iter(range(1, self.max_attempts + 1))

    async def wait(self, attempt: int) -> None:
        delay = self.delay_ms(attempt)
        if delay > 0:
            await self.sleep(delay / 1000.0)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    The last exception is re-raised once every attempt has failed.
    """
    last_error: Optional[BaseException] = None
    for attempt in policy.attempts():
        try:
            return await operation()
        except retry_on as exc:
            last_error = exc
            logger.warning(
                "retry_attempt_failed",
                label=label,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if attempt < policy.max_attempts:
                await policy.wait(attempt)
    logger.error("retry_exhausted", label=label, attempts=policy.max_attempts)
    assert last_error is not None
    raise last_error


__all__ = ["BackoffPolicy", "retry_async", "Sleep"]
