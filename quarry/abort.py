"""
Cooperative Cancellation Tokens
===============================

Each fetch attempt receives an ``AbortSignal``. Aborting never interrupts the
operation: it only flips ``signal.aborted`` and calls registered listeners.
The operation is expected to notice and stop (closing connections and the
like); the engine, for its part, stops waiting for and ignores the result.
"""

import logging
from typing import Any, Callable, List, Optional


class AbortSignal:
    def __init__(self) -> None:
        self._aborted = False
        self._reason: Any = None
        self._listeners: List[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> Any:
        return self._reason

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Call ``listener`` on abort (immediately if already aborted)."""
        if self._aborted:
            listener()
        else:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _abort(self, reason: Any) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception as e:
                logging.error(f"Error in abort listener: {e!r}")

    def __repr__(self) -> str:
        return f"AbortSignal(aborted={self._aborted})"


class AbortController:
    """Owns an ``AbortSignal`` and is the only way to trigger it."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: Optional[Any] = None) -> None:
        self.signal._abort(reason)
