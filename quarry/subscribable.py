"""
Subscribable - Listener Registry Base Class
===========================================

Base class for everything consumers can subscribe to: observers, caches and
the focus/online services. Subclasses hook ``on_subscribe`` and
``on_unsubscribe`` to attach and detach their own resources lazily.
"""

from typing import Callable, Dict, Generic, List, TypeVar

TListener = TypeVar("TListener", bound=Callable)


class Subscribable(Generic[TListener]):
    """
    Ordered registry of listener callbacks.

    ``subscribe`` returns an unsubscribe function instead of the subscribable
    itself, so callers can keep exactly the handle they need to detach.
    """

    def __init__(self) -> None:
        self.listeners: Dict[TListener, None] = {}

    def subscribe(self, listener: TListener) -> Callable[[], None]:
        self.listeners[listener] = None
        self.on_subscribe()

        def unsubscribe() -> None:
            self.listeners.pop(listener, None)
            self.on_unsubscribe()

        return unsubscribe

    def has_listeners(self) -> bool:
        return len(self.listeners) > 0

    def snapshot_listeners(self) -> List[TListener]:
        return list(self.listeners)

    def on_subscribe(self) -> None:
        pass

    def on_unsubscribe(self) -> None:
        pass
