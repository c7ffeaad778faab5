from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, TypeVar

T = TypeVar("T")

# (attempt, delay_s, error)
RetryHook = Callable[[int, float, BaseException], None]
# (attempt, error)
GiveUpHook = Callable[[int, BaseException], None]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """
    Capped exponential backoff.

    max_attempts counts every call, so max_attempts=3 means one call plus two retries.
    """

    max_attempts: int = 3
    base_delay_s: float = 2.0
    factor: float = 2.0
    cap_s: float = 10.0
    jitter: bool = False

    def delay_for(self, attempt: int) -> float:
        """
        Delay before the retry that follows failed attempt `attempt` (1-based).
        """
        n = max(1, int(attempt))
        delay = min(float(self.cap_s), float(self.base_delay_s) * (float(self.factor) ** (n - 1)))
        if self.jitter:
            delay = delay * (0.5 + random.random())
        return max(0.0, delay)

    def with_overrides(self, **kw: Any) -> RetryPolicy:
        d = {
            "max_attempts": self.max_attempts,
            "base_delay_s": self.base_delay_s,
            "factor": self.factor,
            "cap_s": self.cap_s,
            "jitter": self.jitter,
        }
        d.update({k: v for k, v in kw.items() if v is not None})
        return RetryPolicy(**d)


def is_retryable(ex: BaseException) -> bool:
    return bool(getattr(ex, "retryable", False))


def _hook(fn: Callable[..., None] | None, *args: Any) -> None:
    if fn is None:
        return
    # observers never change the outcome of the call
    with suppress(Exception):
        fn(*args)


def retry_call(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    on_retry: RetryHook | None = None,
    on_giveup: GiveUpHook | None = None,
) -> T:
    """
    Call fn() until it succeeds, a non-retryable error is raised, or attempts run out.

    on_retry fires before each backoff sleep; on_giveup fires once when a retryable
    error exhausts the attempts. The last error is always re-raised.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as ex:
            if not retry_on(ex):
                raise
            if attempt >= int(policy.max_attempts):
                _hook(on_giveup, attempt, ex)
                raise
            delay = policy.delay_for(attempt)
            _hook(on_retry, attempt, delay, ex)
            time.sleep(delay)


async def retry_call_async(
    fn: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    retry_on: Callable[[BaseException], bool] = is_retryable,
    on_retry: RetryHook | None = None,
    on_giveup: GiveUpHook | None = None,
) -> T:
    """
    Async twin of retry_call. Cancellation during the backoff sleep propagates.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as ex:
            if not retry_on(ex):
                raise
            if attempt >= int(policy.max_attempts):
                _hook(on_giveup, attempt, ex)
                raise
            delay = policy.delay_for(attempt)
            _hook(on_retry, attempt, delay, ex)
            await asyncio.sleep(delay)
