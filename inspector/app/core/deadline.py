"""Deadline utilities.

`Deadline` tracks a monotonic cut-off for one network-facing operation.
`bounded_attempts` is an async generator that yields the timeout the caller should
give its next attempt (never more than `attempt_cap`, never more than what is left),
then pauses before the following one. Iteration stops once the deadline has passed
or the cancel event is set, so retry loops read as a plain `async for`.
"""
from __future__ import annotations

import asyncio
import time
from typing import AsyncIterator, Callable


class Deadline:
    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._started = clock()
        self._at = self._started + max(0.0, float(seconds))

    def remaining(self) -> float:
        return max(0.0, self._at - self._clock())

    def elapsed(self) -> float:
        return self._clock() - self._started

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def cap(self, seconds: float) -> float:
        return min(float(seconds), self.remaining())


async def bounded_attempts(
    deadline: Deadline,
    attempt_cap: float,
    pause: float,
    cancel: asyncio.Event | None = None,
) -> AsyncIterator[float]:
    while True:
        if cancel is not None and cancel.is_set():
            return
        remaining = deadline.remaining()
        if remaining <= 0.0:
            return
        yield min(attempt_cap, remaining)
        remaining = deadline.remaining()
        if remaining <= 0.0 or (cancel is not None and cancel.is_set()):
            return
        await asyncio.sleep(min(pause, remaining))
