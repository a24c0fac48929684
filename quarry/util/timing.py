"""
Timing Helpers
==============

Durations throughout quarry are seconds (floats) and timestamps are
``time.time()`` values. Timers are scheduled on the running ``asyncio`` loop;
without a running loop, timer-driven behavior (GC, stale timeouts, refetch
intervals) is simply not scheduled.
"""

import asyncio
import math
import time
from typing import Any, Optional

DEFAULT_GC_TIME = 300.0


def now() -> float:
    return time.time()


def get_loop() -> Optional[asyncio.AbstractEventLoop]:
    """Return the running event loop, or None outside of one."""
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def is_valid_timeout(value: Any) -> bool:
    """A timeout is valid when it is a finite, non-negative number."""
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and value >= 0
        and math.isfinite(value)
    )


def time_until_stale(updated_at: float, stale_time: Optional[float] = 0) -> float:
    """Seconds left before data stamped at ``updated_at`` turns stale."""
    return max(updated_at + (stale_time or 0) - now(), 0)


def default_retry_delay(failure_count: int, error: Any = None) -> float:
    """Exponential backoff: 1s, 2s, 4s, ... capped at 30s."""
    return min(1.0 * 2**failure_count, 30.0)


async def cancellable_sleep(delay: float, waiter: "asyncio.Future") -> None:
    """
    Sleep for ``delay`` seconds unless ``waiter`` is resolved first.

    The timer handle is cancelled as soon as the waiter completes, so a
    cancelled delay leaves nothing scheduled on the loop.
    """
    loop = asyncio.get_running_loop()

    def wake() -> None:
        if not waiter.done():
            waiter.set_result(None)

    handle = loop.call_later(max(delay, 0), wake)
    try:
        await waiter
    finally:
        handle.cancel()
