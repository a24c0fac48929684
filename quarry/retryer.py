"""
quarry Retryer - Retry, Backoff, Pause and Cancellation
=======================================================

A Retryer runs one caller-supplied operation until it succeeds, its retry
budget runs out, or it is cancelled. Its outcome is a single future that
settles exactly once:

- resolved with the operation's value,
- rejected with the operation's last error once retrying stops,
- rejected with ``CancelledError`` when ``cancel()`` is called, or with a
  reverting one when the operation raises ``asyncio.CancelledError``.

Between attempts the Retryer waits ``retry_delay`` seconds. If, when that
delay ends (or before the first attempt), the process is offline, unfocused,
or ``can_run`` forbids running, the Retryer *pauses*: it schedules nothing
until ``continue_()`` is called while running is allowed again. Pause time
never counts against the backoff.

Cancellation is cooperative. ``cancel()`` settles the future at once, fires
the ``abort`` callback (which aborts the operation's signal) and wakes any
pending delay, but an attempt already in flight keeps running until the
operation itself notices the signal; its result is then ignored.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Generic, Optional, TypeVar, Union

from .errors import CancelledError
from .focus_manager import FocusManager
from .focus_manager import focus_manager as default_focus_manager
from .online_manager import OnlineManager
from .online_manager import online_manager as default_online_manager
from .util.aio import consume_exception
from .util.timing import cancellable_sleep, default_retry_delay

T = TypeVar("T")

RetryValue = Union[bool, int, Callable[[int, Exception], bool], None]
RetryDelayValue = Union[float, Callable[[int, Exception], float], None]

DEFAULT_QUERY_RETRY = 3


def can_fetch(network_mode: Optional[str], online_manager: OnlineManager) -> bool:
    """Only the ``online`` network mode refuses to fetch while offline."""
    return (network_mode or "online") != "online" or online_manager.is_online()


class Retryer(Generic[T]):
    def __init__(
        self,
        fn: Callable[[], Any],
        *,
        abort: Optional[Callable[[], None]] = None,
        on_fail: Optional[Callable[[int, Exception], None]] = None,
        on_pause: Optional[Callable[[], None]] = None,
        on_continue: Optional[Callable[[], None]] = None,
        retry: RetryValue = None,
        retry_delay: RetryDelayValue = None,
        network_mode: Optional[str] = None,
        can_run: Optional[Callable[[], bool]] = None,
        focus_manager: Optional[FocusManager] = None,
        online_manager: Optional[OnlineManager] = None,
    ) -> None:
        self._fn = fn
        self._abort = abort
        self._on_fail = on_fail
        self._on_pause = on_pause
        self._on_continue = on_continue
        self._retry = DEFAULT_QUERY_RETRY if retry is None else retry
        self._retry_delay = default_retry_delay if retry_delay is None else retry_delay
        self._network_mode = network_mode or "online"
        self._can_run = can_run or (lambda: True)
        self._focus_manager = focus_manager or default_focus_manager
        self._online_manager = online_manager or default_online_manager

        self._future: Optional[asyncio.Future] = None
        self._task: Optional[asyncio.Task] = None
        self._delay_waiter: Optional[asyncio.Future] = None
        self._continue_waiter: Optional[asyncio.Future] = None
        self._failure_count = 0
        self._is_retry_cancelled = False
        self._is_resolved = False
        self._outcome: Any = None
        self._outcome_is_error = False

    @property
    def promise(self) -> "asyncio.Future":
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
            self._future.add_done_callback(consume_exception)
            if self._is_resolved:
                self._settle_future()
        return self._future

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def is_resolved(self) -> bool:
        return self._is_resolved

    def is_paused(self) -> bool:
        return self._continue_waiter is not None and not self._continue_waiter.done()

    def start(self) -> "asyncio.Future":
        """Begin running the operation and return the settlement future."""
        future = self.promise
        if self._task is None and not self._is_resolved:
            self._task = asyncio.get_running_loop().create_task(self._run())
        return future

    def cancel(self, revert: bool = False, silent: bool = False) -> None:
        if self._is_resolved:
            return
        self._reject(CancelledError(revert=revert, silent=silent))
        if self._abort is not None:
            self._abort()

    def cancel_retry(self) -> None:
        """Let the current attempt finish, but do not retry it."""
        self._is_retry_cancelled = True

    def continue_retry(self) -> None:
        self._is_retry_cancelled = False

    def continue_(self) -> "asyncio.Future":
        """Resume a paused Retryer if running is allowed again."""
        waiter = self._continue_waiter
        if waiter is not None and not waiter.done():
            if self._is_resolved or self.can_continue():
                waiter.set_result(None)
        return self.promise

    def can_start(self) -> bool:
        return can_fetch(self._network_mode, self._online_manager) and self._can_run()

    def can_continue(self) -> bool:
        return (
            self._focus_manager.is_focused()
            and (
                self._network_mode == "always" or self._online_manager.is_online()
            )
            and self._can_run()
        )

    async def _run(self) -> None:
        try:
            await self._attempt_until_settled()
        except asyncio.CancelledError:
            # Whether the operation or this task was cancelled, the future must settle
            self._reject(CancelledError(revert=True))
            raise

    async def _attempt_until_settled(self) -> None:
        if not self.can_start():
            await self._pause()

        while not self._is_resolved:
            try:
                value = self._fn()
                if inspect.isawaitable(value):
                    value = await value
            except Exception as error:
                if self._is_resolved:
                    return
                if self._is_retry_cancelled or not self._should_retry(error):
                    self._reject(error)
                    return

                delay = self._resolve_delay(error)
                self._failure_count += 1
                if self._on_fail is not None:
                    self._on_fail(self._failure_count, error)

                logging.debug(
                    f"Retrying after failure {self._failure_count} in {delay}s: {error!r}"
                )
                await self._sleep(delay)

                if not self._is_resolved and not self.can_continue():
                    await self._pause()
            else:
                self._resolve(value)
                return

    def _should_retry(self, error: Exception) -> bool:
        retry = self._retry
        if isinstance(retry, bool):
            return retry
        if isinstance(retry, int):
            return self._failure_count < retry
        return bool(retry(self._failure_count, error))

    def _resolve_delay(self, error: Exception) -> float:
        if callable(self._retry_delay):
            return self._retry_delay(self._failure_count, error)
        return self._retry_delay

    async def _sleep(self, delay: float) -> None:
        self._delay_waiter = asyncio.get_running_loop().create_future()
        try:
            await cancellable_sleep(delay, self._delay_waiter)
        finally:
            self._delay_waiter = None

    async def _pause(self) -> None:
        self._continue_waiter = asyncio.get_running_loop().create_future()
        if self._on_pause is not None:
            self._on_pause()
        try:
            await self._continue_waiter
        finally:
            self._continue_waiter = None
        if not self._is_resolved and self._on_continue is not None:
            self._on_continue()

    def _resolve(self, value: Any) -> None:
        if self._is_resolved:
            return
        self._is_resolved = True
        self._outcome = value
        self._outcome_is_error = False
        self._settle_future()
        self._wake()

    def _reject(self, error: Exception) -> None:
        if self._is_resolved:
            return
        self._is_resolved = True
        self._outcome = error
        self._outcome_is_error = True
        self._settle_future()
        self._wake()

    def _settle_future(self) -> None:
        future = self._future
        if future is None or future.done():
            return
        if self._outcome_is_error:
            future.set_exception(self._outcome)
        else:
            future.set_result(self._outcome)

    def _wake(self) -> None:
        for waiter in (self._delay_waiter, self._continue_waiter):
            if waiter is not None and not waiter.done():
                waiter.set_result(None)
