"""
Removable - GC Window Handling
==============================

Queries and mutations stay in their cache for ``gc_time`` seconds after they
become unused. Every subscribe/unsubscribe resets the timer; when it fires,
the entity decides in ``optional_remove`` whether it is still unused.
"""

import asyncio
from typing import Optional

from .util.timing import DEFAULT_GC_TIME, get_loop, is_valid_timeout


class Removable:
    def __init__(self) -> None:
        self.gc_time: float = 0
        self._gc_handle: Optional[asyncio.TimerHandle] = None

    def destroy(self) -> None:
        self.clear_gc_timeout()

    def schedule_gc(self) -> None:
        self.clear_gc_timeout()
        if not is_valid_timeout(self.gc_time):
            return
        loop = get_loop()
        if loop is None:
            return
        self._gc_handle = loop.call_later(self.gc_time, self._on_gc_timeout)

    def update_gc_time(self, new_gc_time: Optional[float]) -> None:
        # The longest window requested by any user of the entity wins
        self.gc_time = max(
            self.gc_time or 0,
            new_gc_time if new_gc_time is not None else DEFAULT_GC_TIME,
        )

    def clear_gc_timeout(self) -> None:
        if self._gc_handle is not None:
            self._gc_handle.cancel()
            self._gc_handle = None

    def has_pending_gc(self) -> bool:
        return self._gc_handle is not None

    def _on_gc_timeout(self) -> None:
        self._gc_handle = None
        self.optional_remove()

    def optional_remove(self) -> None:
        raise NotImplementedError
