"""
quarry QueryClient - Client-Level Operations
============================================

The QueryClient is the entry point applications hold on to. It owns one
QueryCache and one MutationCache, resolves option defaults, and offers the
imperative operations adapters build on: fetching and prefetching, reading and
writing cached data, invalidation, cancellation and bulk refetches.

Option Layers
-------------

Options are resolved, lowest priority first, from:

1. ``DefaultOptions`` given to the client,
2. every per-key default registered with ``set_query_defaults`` /
   ``set_mutation_defaults`` whose key is a prefix of the query's key,
3. the options passed to the call.

```python
client = QueryClient(default_options=DefaultOptions(queries=QueryOptions(stale_time=30)))
client.set_query_defaults(["todos"], QueryOptions(gc_time=600))
client.mount()

todos = await client.fetch_query({"query_key": ["todos"], "query_fn": load_todos})
client.set_query_data(["todos"], lambda old: [*old, new_todo])
await client.invalidate_queries({"query_key": ["todos"]})
```

``mount()`` connects the client to its focus and online managers: regaining
focus or connectivity resumes paused mutations and refetches stale queries
configured to refetch on those events.
"""

import asyncio
import dataclasses
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .errors import CancelledError
from .focus_manager import FocusManager
from .focus_manager import focus_manager as default_focus_manager
from .infinite_query_behavior import infinite_query_behavior
from .mutation_cache import MutationCache
from .notify_manager import notify_manager
from .online_manager import OnlineManager
from .online_manager import online_manager as default_online_manager
from .options import (
    DefaultOptions,
    FetchOptions,
    MutationFilters,
    MutationOptions,
    QueryFilters,
    QueryOptions,
    as_filters,
    as_options,
    merge_options,
    resolve_stale_time,
    skip_token,
)
from .query import QueryState
from .query_cache import QueryCache
from .util.aio import consume_exception
from .util.keys import QueryKey, hash_key, hash_query_key_by_options, partial_match_key
from .util.structural import functional_update
from .util.timing import get_loop


class QueryClient:
    def __init__(
        self,
        query_cache: Optional[QueryCache] = None,
        mutation_cache: Optional[MutationCache] = None,
        default_options: Optional[DefaultOptions] = None,
        focus_manager: Optional[FocusManager] = None,
        online_manager: Optional[OnlineManager] = None,
    ) -> None:
        self._query_cache = query_cache if query_cache is not None else QueryCache()
        self._mutation_cache = mutation_cache if mutation_cache is not None else MutationCache()
        self._default_options = default_options or DefaultOptions()
        self._query_defaults: Dict[str, Tuple[QueryKey, QueryOptions]] = {}
        self._mutation_defaults: Dict[str, Tuple[QueryKey, MutationOptions]] = {}
        self._mount_count = 0
        self._unsubscribe_focus: Optional[Callable[[], None]] = None
        self._unsubscribe_online: Optional[Callable[[], None]] = None
        self._background_tasks: Set["asyncio.Task"] = set()

        self.focus_manager = focus_manager or default_focus_manager
        self.online_manager = online_manager or default_online_manager

    def mount(self) -> None:
        self._mount_count += 1
        if self._mount_count != 1:
            return

        def on_focus(focused: bool) -> None:
            if focused:
                self._resume_then(self._query_cache.on_focus)

        def on_online(online: bool) -> None:
            if online:
                self._resume_then(self._query_cache.on_online)

        self._unsubscribe_focus = self.focus_manager.subscribe(on_focus)
        self._unsubscribe_online = self.online_manager.subscribe(on_online)

    def unmount(self) -> None:
        self._mount_count -= 1
        if self._mount_count != 0:
            return

        if self._unsubscribe_focus is not None:
            self._unsubscribe_focus()
            self._unsubscribe_focus = None
        if self._unsubscribe_online is not None:
            self._unsubscribe_online()
            self._unsubscribe_online = None

    def _resume_then(self, callback: Callable[[], None]) -> None:
        """Resume paused mutations, then run ``callback``."""
        loop = get_loop()
        if loop is None:
            callback()
            return

        async def run() -> None:
            await self.resume_paused_mutations()
            callback()

        task = loop.create_task(run())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(consume_exception)

    def is_fetching(self, filters: Any = None) -> int:
        filters = dataclasses.replace(as_filters(QueryFilters, filters), fetch_status="fetching")
        return len(self._query_cache.find_all(filters))

    def is_mutating(self, filters: Any = None) -> int:
        filters = dataclasses.replace(as_filters(MutationFilters, filters), status="pending")
        return len(self._mutation_cache.find_all(filters))

    def get_query_data(self, query_key: QueryKey) -> Any:
        options = self.default_query_options({"query_key": query_key})
        query = self._query_cache.get(options.query_hash)
        return query.state.data if query is not None else None

    async def ensure_query_data(self, options: Any, revalidate_if_stale: bool = False) -> Any:
        """Cached data for the key if present, otherwise fetch it."""
        defaulted_options = self.default_query_options(options)
        query = self._query_cache.build(self, defaulted_options)
        cached_data = query.state.data

        if cached_data is None:
            return await self.fetch_query(options)

        if revalidate_if_stale and query.is_stale_by_time(
            resolve_stale_time(defaulted_options.stale_time, query)
        ):
            self._spawn(self.prefetch_query(defaulted_options))

        return cached_data

    def get_queries_data(self, filters: Any) -> List[Tuple[QueryKey, Any]]:
        return [
            (query.query_key, query.state.data)
            for query in self._query_cache.find_all(filters)
        ]

    def set_query_data(
        self, query_key: QueryKey, updater: Any, updated_at: Optional[float] = None
    ) -> Any:
        """
        Write data for ``query_key``; ``updater`` is a value or ``fn(old_data)``.

        An updater producing ``None`` leaves the cache untouched.
        """
        defaulted_options = self.default_query_options({"query_key": query_key})
        query = self._query_cache.get(defaulted_options.query_hash)
        prev_data = query.state.data if query is not None else None
        data = functional_update(updater, prev_data)

        if data is None:
            return None

        return self._query_cache.build(self, defaulted_options).set_data(
            data, updated_at=updated_at, manual=True
        )

    def set_queries_data(
        self, filters: Any, updater: Any, updated_at: Optional[float] = None
    ) -> List[Tuple[QueryKey, Any]]:
        with notify_manager.transaction():
            return [
                (query.query_key, self.set_query_data(query.query_key, updater, updated_at))
                for query in self._query_cache.find_all(filters)
            ]

    def get_query_state(self, query_key: QueryKey) -> Optional[QueryState]:
        options = self.default_query_options({"query_key": query_key})
        query = self._query_cache.get(options.query_hash)
        return query.state if query is not None else None

    def remove_queries(self, filters: Any = None) -> None:
        with notify_manager.transaction():
            for query in self._query_cache.find_all(filters):
                self._query_cache.remove(query)

    async def reset_queries(
        self, filters: Any = None, cancel_refetch: bool = True, throw_on_error: bool = False
    ) -> None:
        filters = as_filters(QueryFilters, filters)
        with notify_manager.transaction():
            for query in self._query_cache.find_all(filters):
                query.reset()
        await self.refetch_queries(
            dataclasses.replace(filters, type="active"),
            cancel_refetch=cancel_refetch,
            throw_on_error=throw_on_error,
        )

    async def cancel_queries(
        self, filters: Any = None, revert: bool = True, silent: bool = False
    ) -> None:
        with notify_manager.transaction():
            tasks = [
                query.cancel(revert=revert, silent=silent)
                for query in self._query_cache.find_all(filters)
            ]
        tasks = [task for task in tasks if task is not None]
        if tasks:
            await asyncio.gather(*map(asyncio.shield, tasks), return_exceptions=True)

    async def invalidate_queries(
        self,
        filters: Any = None,
        refetch_type: Optional[str] = None,
        cancel_refetch: bool = True,
        throw_on_error: bool = False,
    ) -> None:
        """
        Mark matching queries stale and refetch them.

        ``refetch_type`` picks which of the invalidated queries are refetched:
        ``"active"`` (default), ``"inactive"``, ``"all"`` or ``"none"``.
        """
        filters = as_filters(QueryFilters, filters)
        with notify_manager.transaction():
            for query in self._query_cache.find_all(filters):
                query.invalidate()

        if refetch_type == "none":
            return

        await self.refetch_queries(
            dataclasses.replace(filters, type=refetch_type or filters.type or "active"),
            cancel_refetch=cancel_refetch,
            throw_on_error=throw_on_error,
        )

    async def refetch_queries(
        self, filters: Any = None, cancel_refetch: bool = True, throw_on_error: bool = False
    ) -> None:
        fetch_options = FetchOptions(cancel_refetch=cancel_refetch)
        tasks = []
        with notify_manager.transaction():
            for query in self._query_cache.find_all(filters):
                if query.is_disabled() or query.is_static():
                    continue
                task = query.fetch(None, fetch_options)
                # Paused fetches resolve whenever connectivity returns
                if query.state.fetch_status != "paused":
                    tasks.append(task)

        results = await asyncio.gather(*map(asyncio.shield, tasks), return_exceptions=True)
        if throw_on_error:
            for result in results:
                if isinstance(result, Exception) and not isinstance(result, CancelledError):
                    raise result

    async def fetch_query(self, options: Any) -> Any:
        """
        Fetch a query unless fresh data is cached, and return its data.

        Errors propagate to the caller. Unlike observers, ``fetch_query`` does
        not retry unless ``retry`` is configured.
        """
        defaulted_options = self.default_query_options(options)
        if defaulted_options.retry is None:
            defaulted_options = dataclasses.replace(defaulted_options, retry=False)

        query = self._query_cache.build(self, defaulted_options)

        if query.is_stale_by_time(resolve_stale_time(defaulted_options.stale_time, query)):
            return await asyncio.shield(query.fetch(defaulted_options))
        return query.state.data

    async def prefetch_query(self, options: Any) -> None:
        try:
            await self.fetch_query(options)
        except Exception as e:
            logging.debug(f"Prefetch failed: {e!r}")

    async def fetch_infinite_query(self, options: Any) -> Any:
        return await self.fetch_query(self._infinite_options(options))

    async def prefetch_infinite_query(self, options: Any) -> None:
        try:
            await self.fetch_infinite_query(options)
        except Exception as e:
            logging.debug(f"Infinite prefetch failed: {e!r}")

    async def ensure_infinite_query_data(
        self, options: Any, revalidate_if_stale: bool = False
    ) -> Any:
        return await self.ensure_query_data(
            self._infinite_options(options), revalidate_if_stale=revalidate_if_stale
        )

    def _infinite_options(self, options: Any) -> QueryOptions:
        options = as_options(QueryOptions, options)
        return dataclasses.replace(options, behavior=infinite_query_behavior(options.pages))

    async def resume_paused_mutations(self) -> None:
        if self.online_manager.is_online():
            await self._mutation_cache.resume_paused_mutations()

    def get_query_cache(self) -> QueryCache:
        return self._query_cache

    def get_mutation_cache(self) -> MutationCache:
        return self._mutation_cache

    def get_default_options(self) -> DefaultOptions:
        return self._default_options

    def set_default_options(self, options: DefaultOptions) -> None:
        self._default_options = options

    def set_query_defaults(self, query_key: QueryKey, options: Any) -> None:
        self._query_defaults[hash_key(query_key)] = (
            query_key,
            as_options(QueryOptions, options),
        )

    def get_query_defaults(self, query_key: QueryKey) -> QueryOptions:
        """Merge every registered default whose key is a prefix of ``query_key``."""
        return merge_options(
            QueryOptions,
            *(
                defaults
                for key, defaults in self._query_defaults.values()
                if partial_match_key(query_key, key)
            ),
        )

    def set_mutation_defaults(self, mutation_key: QueryKey, options: Any) -> None:
        self._mutation_defaults[hash_key(mutation_key)] = (
            mutation_key,
            as_options(MutationOptions, options),
        )

    def get_mutation_defaults(self, mutation_key: QueryKey) -> MutationOptions:
        return merge_options(
            MutationOptions,
            *(
                defaults
                for key, defaults in self._mutation_defaults.values()
                if partial_match_key(mutation_key, key)
            ),
        )

    def default_query_options(self, options: Any) -> QueryOptions:
        if isinstance(options, QueryOptions) and options._defaulted:
            return options

        options = as_options(QueryOptions, options)
        defaulted_options = merge_options(
            QueryOptions,
            self._default_options.queries,
            self.get_query_defaults(options.query_key) if options.query_key is not None else None,
            options,
        )
        defaulted_options._defaulted = True

        if defaulted_options.query_hash is None and defaulted_options.query_key is not None:
            defaulted_options.query_hash = hash_query_key_by_options(
                defaulted_options.query_key, defaulted_options
            )

        # Nothing to wait for when the network mode ignores connectivity
        if defaulted_options.refetch_on_reconnect is None:
            defaulted_options.refetch_on_reconnect = defaulted_options.network_mode != "always"

        if defaulted_options.query_fn is skip_token:
            defaulted_options.enabled = False

        return defaulted_options

    def default_mutation_options(self, options: Any) -> MutationOptions:
        if isinstance(options, MutationOptions) and options._defaulted:
            return options

        options = as_options(MutationOptions, options)
        defaulted_options = merge_options(
            MutationOptions,
            self._default_options.mutations,
            self.get_mutation_defaults(options.mutation_key)
            if options.mutation_key is not None
            else None,
            options,
        )
        defaulted_options._defaulted = True
        return defaulted_options

    def clear(self) -> None:
        self._query_cache.clear()
        self._mutation_cache.clear()

    def _spawn(self, coroutine: Any) -> None:
        task = asyncio.ensure_future(coroutine)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(consume_exception)
