"""
Cache Events
============

Records emitted by the query and mutation caches to their subscribers
(tooling, persisters). The engine's own control flow never depends on them.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class QueryCacheNotifyEvent:
    """
    ``type`` is one of ``added``, ``removed``, ``updated``, ``observerAdded``,
    ``observerRemoved``, ``observerResultsUpdated``, ``observerOptionsUpdated``.
    """

    type: str
    query: Any
    action: Optional[dict] = None
    observer: Optional[Any] = None


@dataclass
class MutationCacheNotifyEvent:
    type: str
    mutation: Any
    action: Optional[dict] = None
    observer: Optional[Any] = None
