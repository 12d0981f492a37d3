from __future__ import annotations
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Callable, Awaitable, TypeVar, Optional

from .config import Settings
from .errors import RetryError

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 0.3
    max_delay: float = 2.0
    jitter: float = 0.2

    @classmethod
    def from_settings(cls, env: Settings) -> "RetryPolicy":
        return cls(
            attempts=max(1, env.retry_max_attempts),
            base_delay=env.retry_base_delay,
            max_delay=env.retry_max_delay,
            jitter=env.retry_jitter,
        )

    def delay_for(self, attempt: int) -> float:
        # exponential backoff from base_delay, capped, plus up to `jitter` seconds
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return max(0.0, delay + random.uniform(0.0, self.jitter))


async def retry_async(
        fn: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        *,
        retry_on: tuple[type[Exception], ...] = (Exception,),
        should_retry: Optional[Callable[[Exception], bool]] = None,
        label: str = "operation",
) -> T:
    """
    Await fn() up to policy.attempts times.

    Errors outside retry_on, or rejected by should_retry, propagate unchanged on the
    attempt that raised them. Running out of attempts raises RetryError chained to the
    last failure.
    """
    last_exc: Optional[Exception] = None
    for attempt in range(1, policy.attempts + 1):
        try:
            return await fn()
        except retry_on as e:
            last_exc = e
            if should_retry is not None and not should_retry(e):
                raise
            if attempt == policy.attempts:
                break
            delay = policy.delay_for(attempt)
            logger.info("retrying %s attempt=%d/%d delay=%.2fs error=%s", label, attempt, policy.attempts, delay, e)
            await asyncio.sleep(delay)
    raise RetryError(
        f"{label} failed after {policy.attempts} attempts: {last_exc}",
        details={"attempts": policy.attempts, "operation": label},
    ) from last_exc
