"""
quarry FocusManager - Visibility Signal Service
===============================================

Tracks whether the application is "focused" (in the foreground). Queries
configured with ``refetch_on_window_focus`` refetch when focus returns, and
paused retries resume.

Python has no ambient visibility source, so one is plugged in explicitly:

```python
def watch_window(handle_focus):
    window.on_activate(lambda: handle_focus(True))
    window.on_deactivate(lambda: handle_focus(False))
    return window.remove_handlers

focus_manager.set_event_listener(watch_window)
```

The source is attached when the first listener subscribes and cleaned up when
the last one leaves. ``set_focused`` overrides the state directly.
"""

from typing import Callable, Optional

from .subscribable import Subscribable

FocusListener = Callable[[bool], None]
FocusSetup = Callable[[Callable[[Optional[bool]], None]], Optional[Callable[[], None]]]


class FocusManager(Subscribable[FocusListener]):
    def __init__(self, setup: Optional[FocusSetup] = None) -> None:
        super().__init__()
        self._focused: Optional[bool] = None
        self._cleanup: Optional[Callable[[], None]] = None
        self._setup = setup

    def on_subscribe(self) -> None:
        if self._cleanup is None and self._setup is not None:
            self.set_event_listener(self._setup)

    def on_unsubscribe(self) -> None:
        if not self.has_listeners() and self._cleanup is not None:
            self._cleanup()
            self._cleanup = None

    def set_event_listener(self, setup: FocusSetup) -> None:
        """Install ``setup`` as the environment source, replacing any previous one."""
        self._setup = setup
        if self._cleanup is not None:
            self._cleanup()
            self._cleanup = None
        if not self.has_listeners():
            return

        def handle(focused: Optional[bool] = None) -> None:
            if isinstance(focused, bool):
                self.set_focused(focused)
            else:
                self.on_focus()

        self._cleanup = setup(handle)

    def set_focused(self, focused: Optional[bool]) -> None:
        """Override the focus state; ``None`` falls back to "focused"."""
        changed = self._focused != focused
        if changed:
            self._focused = focused
            self.on_focus()

    def on_focus(self) -> None:
        is_focused = self.is_focused()
        for listener in self.snapshot_listeners():
            listener(is_focused)

    def is_focused(self) -> bool:
        if isinstance(self._focused, bool):
            return self._focused
        return True

    def is_attached(self) -> bool:
        return self._cleanup is not None


focus_manager = FocusManager()
