"""
quarry NotifyManager - Batched Notification Delivery
====================================================

Every state change in the cache ends in notifications: observers recompute
their results and call their listeners, and the caches emit events for
tooling. The NotifyManager collapses all notifications produced within one
logical chain of writes into a single flush scheduled on the event loop.

Batching works like a transaction: the outermost ``batch()`` (or
``transaction()`` block) defers every scheduled callback until it returns,
then flushes the queue once.

```python
with notify_manager.transaction():
    query.set_data(1)
    query.set_data(2)
    query.set_data(3)
# listeners see a single update carrying data == 3
```

Callbacks scheduled with a ``key`` are collapsed while one with the same key
is pending, which is how N writes to one observer become one delivery: the
callback reads the observer's state when it runs, not when it was scheduled.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Hashable, Iterator, List, Optional, TypeVar

from .util.timing import get_loop

T = TypeVar("T")

NotifyCallback = Callable[[], None]


def _default_scheduler(callback: Callable[[], None]) -> None:
    loop = get_loop()
    if loop is None:
        callback()
    else:
        loop.call_soon(callback)


class NotifyManager:
    """Queues notifications during batches and flushes them on the loop."""

    def __init__(self) -> None:
        self._queue: List[NotifyCallback] = []
        self._pending_keys: Dict[Hashable, None] = {}
        self._transactions = 0
        self._notify_fn: Callable[[NotifyCallback], None] = lambda callback: callback()
        self._batch_notify_fn: Callable[[Callable[[], None]], None] = (
            lambda callback: callback()
        )
        self._schedule_fn: Callable[[Callable[[], None]], None] = _default_scheduler

    def batch(self, callback: Callable[[], T]) -> T:
        """Run ``callback`` inside a batch and return its result."""
        with self.transaction():
            return callback()

    @contextmanager
    def transaction(self) -> Iterator["NotifyManager"]:
        """Context manager form of ``batch``; nested blocks extend the batch."""
        self._transactions += 1
        try:
            yield self
        finally:
            self._transactions -= 1
            if not self._transactions:
                self._flush()

    def is_batching(self) -> bool:
        return self._transactions > 0

    def schedule(self, callback: NotifyCallback, key: Optional[Hashable] = None) -> None:
        """
        Schedule ``callback`` for delivery.

        Inside a batch the callback joins the queue flushed when the batch
        ends; outside, it is handed to the scheduler right away. A callback
        whose ``key`` is already pending is dropped.
        """
        if key is not None:
            if key in self._pending_keys:
                return
            self._pending_keys[key] = None
            original = callback

            def callback() -> None:
                self._pending_keys.pop(key, None)
                original()

        if self._transactions:
            self._queue.append(callback)
        else:
            self._schedule_fn(lambda: self._run([callback]))

    def batch_calls(self, fn: Callable[..., Any]) -> Callable[..., None]:
        """Wrap ``fn`` so every call is scheduled instead of run inline."""

        def wrapper(*args: Any, **kwargs: Any) -> None:
            self.schedule(lambda: fn(*args, **kwargs))

        return wrapper

    def set_notify_function(self, fn: Callable[[NotifyCallback], None]) -> None:
        """Wrap each individual notification, e.g. to run it inside a framework hook."""
        self._notify_fn = fn

    def set_batch_notify_function(self, fn: Callable[[Callable[[], None]], None]) -> None:
        """Wrap each flushed group of notifications."""
        self._batch_notify_fn = fn

    def set_scheduler(self, fn: Callable[[Callable[[], None]], None]) -> None:
        """Replace the function used to defer flushes (default: ``loop.call_soon``)."""
        self._schedule_fn = fn

    def _flush(self) -> None:
        queue = self._queue
        self._queue = []
        if queue:
            self._schedule_fn(lambda: self._run(queue))

    def _run(self, queue: List[NotifyCallback]) -> None:
        def deliver() -> None:
            for callback in queue:
                try:
                    self._notify_fn(callback)
                except Exception as e:
                    logging.error(f"Error in quarry notification listener: {e!r}")

        self._batch_notify_fn(deliver)

    def _reset(self) -> None:
        """Reset queue, batch depth and hooks; for tests only."""
        self.__init__()


notify_manager = NotifyManager()
