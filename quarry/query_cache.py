"""
quarry QueryCache - Fingerprint-Indexed Query Registry
======================================================

The QueryCache maps query fingerprints to ``Query`` instances. ``build``
returns the existing query for a key or creates one; there is never more than
one query per fingerprint. Subscribers receive a ``QueryCacheNotifyEvent``
for every add, remove and state change, which is how persisters and devtools
follow the cache without touching the engine.

Global hooks configured on the cache run for every query, after the per-query
state has been written:

```python
cache = QueryCache(QueryCacheConfig(on_error=lambda error, query: report(error)))
client = QueryClient(query_cache=cache)
```
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from .events import QueryCacheNotifyEvent
from .notify_manager import notify_manager
from .options import QueryFilters, QueryOptions, as_filters
from .query import Query, QueryState
from .subscribable import Subscribable
from .util.keys import hash_query_key_by_options, match_query

if TYPE_CHECKING:
    from .query_client import QueryClient

QueryCacheListener = Callable[[QueryCacheNotifyEvent], None]


@dataclass
class QueryCacheConfig:
    on_error: Optional[Callable[[Exception, Query], Any]] = None
    on_success: Optional[Callable[[Any, Query], Any]] = None
    on_settled: Optional[Callable[[Any, Optional[Exception], Query], Any]] = None


class QueryCache(Subscribable[QueryCacheListener]):
    def __init__(self, config: Optional[QueryCacheConfig] = None) -> None:
        super().__init__()
        self.config = config or QueryCacheConfig()
        self._queries: Dict[str, Query] = {}

    def build(
        self,
        client: "QueryClient",
        options: QueryOptions,
        state: Optional[QueryState] = None,
    ) -> Query:
        query_key = options.query_key
        query_hash = options.query_hash or hash_query_key_by_options(query_key, options)
        query = self.get(query_hash)

        if query is None:
            query = Query(
                client=client,
                cache=self,
                query_key=query_key,
                query_hash=query_hash,
                options=client.default_query_options(options),
                state=state,
            )
            self.add(query)

        return query

    def add(self, query: Query) -> None:
        if query.query_hash not in self._queries:
            self._queries[query.query_hash] = query
            self.notify(QueryCacheNotifyEvent("added", query))

    def remove(self, query: Query) -> None:
        query_in_map = self._queries.get(query.query_hash)
        if query_in_map is None:
            return

        query.destroy()
        # Only the registered instance owns the fingerprint slot
        if query_in_map is query:
            del self._queries[query.query_hash]
            logging.debug(f"Removed query {query.query_hash}")
        self.notify(QueryCacheNotifyEvent("removed", query))

    def clear(self) -> None:
        def remove_all() -> None:
            for query in self.get_all():
                self.remove(query)

        notify_manager.batch(remove_all)

    def get(self, query_hash: str) -> Optional[Query]:
        return self._queries.get(query_hash)

    def get_all(self) -> List[Query]:
        return list(self._queries.values())

    def find(self, filters: Any) -> Optional[Query]:
        """First query matching ``filters``; ``exact`` defaults to True here."""
        if not isinstance(filters, QueryFilters):
            filters = dict(filters)
            filters.setdefault("exact", True)
        filters = as_filters(QueryFilters, filters)
        return next((q for q in self._queries.values() if match_query(filters, q)), None)

    def find_all(self, filters: Any = None) -> List[Query]:
        filters = as_filters(QueryFilters, filters)
        return [q for q in self._queries.values() if match_query(filters, q)]

    def notify(self, event: QueryCacheNotifyEvent) -> None:
        def deliver() -> None:
            for listener in self.snapshot_listeners():
                listener(event)

        notify_manager.batch(deliver)

    def on_focus(self) -> None:
        def focus_all() -> None:
            for query in self.get_all():
                query.on_focus()

        notify_manager.batch(focus_all)

    def on_online(self) -> None:
        def online_all() -> None:
            for query in self.get_all():
                query.on_online()

        notify_manager.batch(online_all)

    def __len__(self) -> int:
        return len(self._queries)

    def __contains__(self, query_hash: object) -> bool:
        return query_hash in self._queries
