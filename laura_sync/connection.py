"""Reconnect backoff shared by the command channel and registration retries."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from .config import ResilienceConfig


@dataclass(frozen=True, slots=True)
class BackoffPolicy:
    """Exponential backoff with symmetric jitter, capped at ``max_seconds``.

    Attempt ``n`` (1-based) waits ``initial * multiplier ** (n - 1)`` seconds,
    capped, then spread by ``jitter_ratio`` in both directions.
    """

    initial_seconds: float = 1.0
    max_seconds: float = 120.0
    jitter_ratio: float = 0.5
    multiplier: float = 2.0

    @classmethod
    def from_config(cls, resilience: ResilienceConfig) -> "BackoffPolicy":
        return cls(
            initial_seconds=resilience.reconnect_initial_seconds,
            max_seconds=resilience.reconnect_max_seconds,
            jitter_ratio=resilience.reconnect_jitter_ratio,
        )

    def delay(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        base = self.initial_seconds * (self.multiplier**exponent)
        return min(base, max(self.initial_seconds, self.max_seconds))

    def jittered(
        self,
        attempt: int,
        *,
        uniform: Callable[[float, float], float] = random.uniform,
    ) -> float:
        delay = self.delay(attempt)
        jitter_ratio = max(0.0, min(1.0, self.jitter_ratio))
        if jitter_ratio == 0.0:
            return delay
        jitter = delay * jitter_ratio
        return uniform(max(0.0, delay - jitter), delay + jitter)


async def wait_or_stop(stop_event: asyncio.Event, timeout: float) -> bool:
    """Sleep for ``timeout`` seconds unless ``stop_event`` fires first.

    Returns True when the stop event was set.
    """

    if stop_event.is_set():
        return True
    if timeout <= 0:
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        return False
    return True
