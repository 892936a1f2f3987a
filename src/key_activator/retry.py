"""Exponential backoff used between retried activation steps."""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .config import Settings
from .errors import ActivationError, ErrorCode


@dataclass(frozen=True)
class Backoff:
    """Exponential backoff: base * 2^(attempt-1), capped, with optional jitter.

    Attempts are numbered from 1; `delay(1)` is the wait after the first
    failed attempt.
    """

    base: float = 1.0
    cap: float = 8.0
    jitter: bool = True
    rng: Callable[[], float] = field(default=random.random, compare=False, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Backoff":
        return cls(
            base=settings.backoff_base_seconds,
            cap=settings.backoff_cap_seconds,
            jitter=settings.backoff_jitter,
        )

    def delay(self, attempt: int) -> float:
        delay = min(self.cap, self.base * (2 ** max(attempt - 1, 0)))
        if self.jitter:
            # Jitter within the upper half of the window.
            delay = delay / 2 + (delay / 2) * self.rng()
        return delay


async def cancellable_sleep(
    sleep: Callable[[float], Awaitable[Any]],
    delay: float,
    stop: asyncio.Event,
) -> None:
    """Sleep for delay unless stop is set first.

    Raises:
        ActivationError: cancelled when stop is set before or during the sleep
    """
    if stop.is_set():
        raise ActivationError(ErrorCode.CANCELLED)
    sleeper = asyncio.ensure_future(sleep(delay))
    stopper = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (sleeper, stopper):
            if not task.done():
                task.cancel()
    if stop.is_set():
        raise ActivationError(ErrorCode.CANCELLED)
    sleeper.result()
