"""Bounded polling loops for waits over the remote channel.

The channel has no push notifications, so every wait is a fixed-interval poll
with an explicit deadline. A timeout ends only the loop; an evaluation that is
already in flight is allowed to finish.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

POLL_INTERVAL_S = 0.1


async def poll_until(
    check: Callable[[], Awaitable[T | None]],
    *,
    timeout_s: float,
    interval_s: float = POLL_INTERVAL_S,
) -> T | None:
    """Await `check` every `interval_s` until it returns non-None or time runs out.

    Returns the first non-None result, or None once `timeout_s` has elapsed.
    `check` always runs at least once.
    """
    deadline = time.monotonic() + max(0.0, float(timeout_s))
    interval = max(0.0, float(interval_s))
    while True:
        result = await check()
        if result is not None:
            return result
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        await asyncio.sleep(min(interval, remaining))


def ms_to_s(value_ms: float) -> float:
    return max(0.0, float(value_ms)) / 1000.0
