"""
Test utilities for quarry.

Helpers for driving the event loop from tests: letting scheduled
notifications flush, waiting for a condition, and recording what listeners
receive.
"""

import asyncio
from typing import Any, Callable, List


async def flush(ticks: int = 5) -> None:
    """Let callbacks scheduled with ``call_soon`` (and what they schedule) run."""
    for _ in range(ticks):
        await asyncio.sleep(0)


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll ``predicate`` until it holds; fail the test after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.001)


class Recorder:
    """Listener that keeps every value it is called with."""

    def __init__(self) -> None:
        self.calls: List[Any] = []

    def __call__(self, value: Any) -> None:
        self.calls.append(value)

    @property
    def last(self) -> Any:
        return self.calls[-1] if self.calls else None

    def __len__(self) -> int:
        return len(self.calls)


__all__ = ["flush", "wait_for", "Recorder"]
