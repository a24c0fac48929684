"""
quarry OnlineManager - Connectivity Signal Service
==================================================

Tracks whether the process can reach the network. While offline, fetches in
``online`` network mode start (or fall back) into the ``paused`` fetch status
and retries wait; the reconnect signal resumes them and refetches queries
configured with ``refetch_on_reconnect``.

The connectivity source is pluggable through ``set_event_listener`` and is
attached lazily, exactly like the FocusManager.
"""

from typing import Callable, Optional

from .subscribable import Subscribable

OnlineListener = Callable[[bool], None]
OnlineSetup = Callable[[Callable[[bool], None]], Optional[Callable[[], None]]]


class OnlineManager(Subscribable[OnlineListener]):
    def __init__(self, setup: Optional[OnlineSetup] = None) -> None:
        super().__init__()
        self._online = True
        self._cleanup: Optional[Callable[[], None]] = None
        self._setup = setup

    def on_subscribe(self) -> None:
        if self._cleanup is None and self._setup is not None:
            self.set_event_listener(self._setup)

    def on_unsubscribe(self) -> None:
        if not self.has_listeners() and self._cleanup is not None:
            self._cleanup()
            self._cleanup = None

    def set_event_listener(self, setup: OnlineSetup) -> None:
        self._setup = setup
        if self._cleanup is not None:
            self._cleanup()
            self._cleanup = None
        if not self.has_listeners():
            return
        self._cleanup = setup(self.set_online)

    def set_online(self, online: bool) -> None:
        changed = self._online != online
        if changed:
            self._online = online
            for listener in self.snapshot_listeners():
                listener(online)

    def is_online(self) -> bool:
        return self._online

    def is_attached(self) -> bool:
        return self._cleanup is not None


online_manager = OnlineManager()
