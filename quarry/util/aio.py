"""Helpers for calling user hooks that may or may not be coroutines."""

import inspect
from typing import Any


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def consume_exception(future: Any) -> None:
    """Done-callback that marks a task's exception as retrieved."""
    if not future.cancelled():
        future.exception()
