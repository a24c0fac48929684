"""
quarry QueryObserver - Derived Results and Selective Notification
=================================================================

A QueryObserver is a consumer's view of one query. It attaches to the query
while it has listeners, derives a ``QueryObserverResult`` from the query
state (applying ``select``, ``placeholder_data`` and the staleness rules of
its own options) and calls its listeners when that result changes.

Subscribing
-----------

```python
observer = QueryObserver(client, {"query_key": ["todos"], "query_fn": load_todos})
unsubscribe = observer.subscribe(lambda result: print(result.status, result.data))
# the query is fetched on subscribe when it is enabled and stale
...
unsubscribe()  # detaches; the query's GC window starts
```

Selective Notification
----------------------

By default every change to the result is delivered. Two mechanisms narrow
that down:

- ``notify_on_change_props``: ``"all"``, a list of result field names, or a
  callable returning either.
- Access tracking: read the result through ``track_result`` and only the
  fields actually read are compared.

```python
tracked = observer.track_result(observer.get_current_result())
tracked.data  # only changes to ``data`` notify from now on
```

Several writes to the query inside one batch (or one synchronous stretch of
code) produce a single delivery carrying the latest result.

Timers
------

While subscribed, an observer keeps two timers on the running loop: one that
recomputes the result when the data turns stale, and an optional
``refetch_interval`` poller, paused while the process is unfocused unless
``refetch_interval_in_background`` is set.
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional, Set

from .events import QueryCacheNotifyEvent
from .notify_manager import notify_manager
from .options import (
    FetchOptions,
    QueryOptions,
    resolve_enabled,
    resolve_option,
    resolve_stale_time,
)
from .query import Query, QueryState, fetch_state
from .subscribable import Subscribable
from .util.structural import replace_data, same_value, shallow_equal_objects
from .util.timing import get_loop, is_valid_timeout, now, time_until_stale

if TYPE_CHECKING:
    from .query_client import QueryClient


@dataclass(frozen=True)
class QueryObserverResult:
    status: str
    fetch_status: str
    data: Any
    data_updated_at: float
    error: Optional[Exception]
    error_updated_at: float
    error_update_count: int
    failure_count: int
    failure_reason: Optional[Exception]
    is_pending: bool
    is_success: bool
    is_error: bool
    is_loading: bool
    is_initial_loading: bool
    is_fetching: bool
    is_paused: bool
    is_refetching: bool
    is_loading_error: bool
    is_refetch_error: bool
    is_fetched: bool
    is_fetched_after_mount: bool
    is_placeholder_data: bool
    is_stale: bool
    is_enabled: bool
    refetch: Optional[Callable[..., Any]] = field(default=None, compare=False, repr=False)


ResultListener = Callable[[QueryObserverResult], None]


class TrackedResult:
    """Read-only view of a result that records which fields are read."""

    __slots__ = ("_result", "_observer")

    def __init__(self, result: QueryObserverResult, observer: "QueryObserver") -> None:
        self._result = result
        self._observer = observer

    def __getattr__(self, name: str) -> Any:
        value = getattr(self._result, name)
        if not name.startswith("_"):
            self._observer.track_prop(name)
        return value

    def __repr__(self) -> str:
        return f"TrackedResult({self._result!r})"


def keep_previous_data(previous_data: Any, previous_query: Optional[Query] = None) -> Any:
    """``placeholder_data`` that shows the last key's data while the new key loads."""
    return previous_data


def is_stale(query: Query, options: QueryOptions) -> bool:
    return resolve_enabled(options.enabled, query) and query.is_stale_by_time(
        resolve_stale_time(options.stale_time, query)
    )


def should_fetch_on(query: Query, options: QueryOptions, trigger: Any) -> bool:
    if (
        resolve_enabled(options.enabled, query)
        and resolve_stale_time(options.stale_time, query) != "static"
    ):
        value = resolve_option(trigger, query)
        if value is None:
            value = True
        return value == "always" or (value is not False and is_stale(query, options))
    return False


def should_load_on_mount(query: Query, options: QueryOptions) -> bool:
    return (
        resolve_enabled(options.enabled, query)
        and query.state.data is None
        and not (query.state.status == "error" and options.retry_on_mount is False)
    )


def should_fetch_on_mount(query: Query, options: QueryOptions) -> bool:
    return should_load_on_mount(query, options) or (
        query.state.data is not None
        and should_fetch_on(query, options, options.refetch_on_mount)
    )


def should_fetch_optionally(
    query: Query,
    prev_query: Optional[Query],
    options: QueryOptions,
    prev_options: Optional[QueryOptions],
) -> bool:
    prev_enabled = (
        resolve_enabled(prev_options.enabled, query) if prev_options is not None else False
    )
    return (query is not prev_query or not prev_enabled) and is_stale(query, options)


def should_throw_error(throw_on_error: Any, error: Exception, query: Query) -> bool:
    if callable(throw_on_error):
        return bool(throw_on_error(error, query))
    return bool(throw_on_error)


class QueryObserver(Subscribable[ResultListener]):
    def __init__(self, client: "QueryClient", options: Any) -> None:
        super().__init__()
        self._client = client
        self.options: Optional[QueryOptions] = None

        self._current_query: Optional[Query] = None
        self._current_query_initial_state: Optional[QueryState] = None
        self._current_result: Optional[QueryObserverResult] = None
        self._current_result_state: Optional[QueryState] = None
        self._current_result_options: Optional[QueryOptions] = None
        self._last_query_with_defined_data: Optional[Query] = None

        self._select_error: Optional[Exception] = None
        self._select_fn: Optional[Callable[[Any], Any]] = None
        self._select_result: Any = None

        self._stale_timeout: Optional[asyncio.TimerHandle] = None
        self._refetch_interval: Optional[asyncio.TimerHandle] = None
        self._current_refetch_interval: Any = None
        self._tracked_props: Set[str] = set()

        self.set_options(options)

    def on_subscribe(self) -> None:
        if len(self.listeners) == 1:
            self._current_query.add_observer(self)

            fetched = (
                should_fetch_on_mount(self._current_query, self.options)
                and self.execute_fetch() is not None
            )
            if not fetched:
                self.update_result()

            self._update_timers()

    def on_unsubscribe(self) -> None:
        if not self.has_listeners():
            self.destroy()

    def should_fetch_on_reconnect(self) -> bool:
        return should_fetch_on(
            self._current_query, self.options, self.options.refetch_on_reconnect
        )

    def should_fetch_on_window_focus(self) -> bool:
        return should_fetch_on(
            self._current_query, self.options, self.options.refetch_on_window_focus
        )

    def destroy(self) -> None:
        self.listeners = {}
        self._clear_stale_timeout()
        self._clear_refetch_interval()
        self._current_query.remove_observer(self)

    def set_options(self, options: Any) -> None:
        prev_options = self.options
        prev_query = self._current_query

        self.options = self._client.default_query_options(options)

        enabled = self.options.enabled
        if enabled is not None and not isinstance(enabled, bool) and not callable(enabled):
            raise TypeError("Expected enabled to be a boolean or a callback that returns a boolean")

        self._update_query()
        self._current_query.set_options(self.options)

        if prev_options is not None and not shallow_equal_objects(prev_options, self.options):
            self._client.get_query_cache().notify(
                QueryCacheNotifyEvent(
                    "observerOptionsUpdated", self._current_query, observer=self
                )
            )

        mounted = self.has_listeners()

        if mounted and should_fetch_optionally(
            self._current_query, prev_query, self.options, prev_options
        ):
            self.execute_fetch()

        self.update_result()

        if mounted and (
            self._current_query is not prev_query
            or resolve_enabled(self.options.enabled, self._current_query)
            != resolve_enabled(prev_options.enabled, self._current_query)
            or resolve_stale_time(self.options.stale_time, self._current_query)
            != resolve_stale_time(prev_options.stale_time, self._current_query)
        ):
            self._update_stale_timeout()

        next_refetch_interval = self._compute_refetch_interval()

        if mounted and (
            self._current_query is not prev_query
            or resolve_enabled(self.options.enabled, self._current_query)
            != resolve_enabled(prev_options.enabled, self._current_query)
            or next_refetch_interval != self._current_refetch_interval
        ):
            self._update_refetch_interval(next_refetch_interval)

    def get_optimistic_result(self, options: Any) -> QueryObserverResult:
        """
        Predict the result for ``options`` before subscribing.

        The prediction accounts for the fetch that subscribing would start, so
        a consumer rendering before ``subscribe`` sees ``is_fetching`` already.
        """
        defaulted_options = self._client.default_query_options(options)
        query = self._client.get_query_cache().build(self._client, defaulted_options)

        result = self.create_result(query, defaulted_options, optimistic=True)

        if not shallow_equal_objects(self._current_result, result):
            self._current_result = result
            self._current_result_options = self.options
            self._current_result_state = self._current_query.state

        return result

    @property
    def current_result(self) -> QueryObserverResult:
        return self._current_result

    def get_current_result(self) -> QueryObserverResult:
        """The latest result; raises its error when ``throw_on_error`` applies."""
        result = self._current_result
        if (
            result.is_error
            and not result.is_fetching
            and should_throw_error(self.options.throw_on_error, result.error, self._current_query)
        ):
            raise result.error
        return result

    def track_result(self, result: QueryObserverResult) -> TrackedResult:
        return TrackedResult(result, self)

    def track_prop(self, key: str) -> None:
        self._tracked_props.add(key)

    def get_current_query(self) -> Query:
        return self._current_query

    async def refetch(
        self, cancel_refetch: bool = True, throw_on_error: bool = False
    ) -> QueryObserverResult:
        return await self.fetch(
            FetchOptions(cancel_refetch=cancel_refetch), throw_on_error=throw_on_error
        )

    async def fetch_optimistic(self, options: Any) -> QueryObserverResult:
        defaulted_options = self._client.default_query_options(options)
        query = self._client.get_query_cache().build(self._client, defaulted_options)
        await asyncio.shield(query.fetch())
        return self.create_result(query, defaulted_options)

    async def fetch(
        self, fetch_options: Optional[FetchOptions] = None, throw_on_error: bool = False
    ) -> QueryObserverResult:
        task = self.execute_fetch(fetch_options or FetchOptions(cancel_refetch=True))
        if task is not None:
            try:
                await asyncio.shield(task)
            except Exception:
                if throw_on_error:
                    raise
        self.update_result()
        return self._current_result

    def execute_fetch(self, fetch_options: Optional[FetchOptions] = None) -> Optional["asyncio.Task"]:
        """Fetch the current query; returns None when no event loop is running."""
        # Make sure the query is up to date before fetching
        self._update_query()

        if get_loop() is None:
            logging.debug(f"No running loop, skipping fetch of {self._current_query.query_hash}")
            return None
        return self._current_query.fetch(self.options, fetch_options)

    def create_result(
        self, query: Query, options: QueryOptions, optimistic: bool = False
    ) -> QueryObserverResult:
        prev_query = self._current_query
        prev_options = self.options
        prev_result = self._current_result
        prev_result_state = self._current_result_state
        prev_result_options = self._current_result_options
        query_change = query is not prev_query
        query_initial_state = (
            query.state if query_change else self._current_query_initial_state
        )

        state = query.state
        new_state = state
        is_placeholder_data = False
        data = None

        if optimistic:
            mounted = self.has_listeners()
            fetch_on_mount = not mounted and should_fetch_on_mount(query, options)
            fetch_optionally = mounted and should_fetch_optionally(
                query, prev_query, options, prev_options
            )
            if fetch_on_mount or fetch_optionally:
                new_state = dataclasses.replace(
                    new_state,
                    **fetch_state(state.data, query.options, self._client.online_manager),
                )

        error = new_state.error
        error_updated_at = new_state.error_updated_at
        status = new_state.status

        if options.select is not None and new_state.data is not None:
            if (
                prev_result is not None
                and prev_result_state is not None
                and new_state.data is prev_result_state.data
                and options.select is self._select_fn
            ):
                data = self._select_result
            else:
                try:
                    self._select_fn = options.select
                    data = options.select(new_state.data)
                    data = replace_data(
                        prev_result.data if prev_result else None, data, options
                    )
                    self._select_result = data
                    self._select_error = None
                except Exception as select_error:
                    self._select_error = select_error
        else:
            data = new_state.data

        if options.placeholder_data is not None and data is None and status == "pending":
            if (
                prev_result is not None
                and prev_result.is_placeholder_data
                and prev_result_options is not None
                and options.placeholder_data is prev_result_options.placeholder_data
            ):
                placeholder_data = prev_result.data
            else:
                placeholder_data = options.placeholder_data
                if callable(placeholder_data):
                    last_query = self._last_query_with_defined_data
                    placeholder_data = placeholder_data(
                        last_query.state.data if last_query is not None else None,
                        last_query,
                    )
                if options.select is not None and placeholder_data is not None:
                    try:
                        placeholder_data = options.select(placeholder_data)
                        self._select_error = None
                    except Exception as select_error:
                        self._select_error = select_error

            if placeholder_data is not None:
                status = "success"
                data = replace_data(
                    prev_result.data if prev_result else None, placeholder_data, options
                )
                is_placeholder_data = True

        if self._select_error is not None:
            error = self._select_error
            data = self._select_result
            error_updated_at = now()
            status = "error"

        is_fetching = new_state.fetch_status == "fetching"
        is_pending = status == "pending"
        is_error = status == "error"
        is_loading = is_pending and is_fetching
        has_data = data is not None

        return self._build_result(
            query,
            options,
            status=status,
            fetch_status=new_state.fetch_status,
            data=data,
            data_updated_at=new_state.data_updated_at,
            error=error,
            error_updated_at=error_updated_at,
            error_update_count=new_state.error_update_count,
            failure_count=new_state.fetch_failure_count,
            failure_reason=new_state.fetch_failure_reason,
            is_pending=is_pending,
            is_success=status == "success",
            is_error=is_error,
            is_loading=is_loading,
            is_initial_loading=is_loading,
            is_fetching=is_fetching,
            is_paused=new_state.fetch_status == "paused",
            is_refetching=is_fetching and not is_pending,
            is_loading_error=is_error and not has_data,
            is_refetch_error=is_error and has_data,
            is_fetched=new_state.data_update_count > 0 or new_state.error_update_count > 0,
            is_fetched_after_mount=(
                new_state.data_update_count > query_initial_state.data_update_count
                or new_state.error_update_count > query_initial_state.error_update_count
            ),
            is_placeholder_data=is_placeholder_data,
            is_stale=is_stale(query, options),
            is_enabled=resolve_enabled(options.enabled, query),
            refetch=self.refetch,
        )

    def _build_result(self, query: Query, options: QueryOptions, **fields: Any) -> QueryObserverResult:
        return QueryObserverResult(**fields)

    def update_result(self) -> None:
        prev_result = self._current_result
        next_result = self.create_result(self._current_query, self.options)

        self._current_result_state = self._current_query.state
        self._current_result_options = self.options

        if self._current_result_state.data is not None:
            self._last_query_with_defined_data = self._current_query

        if prev_result is not None and shallow_equal_objects(next_result, prev_result):
            return

        self._current_result = next_result

        def should_notify_listeners() -> bool:
            if prev_result is None:
                return True

            notify_on_change_props = self.options.notify_on_change_props
            if callable(notify_on_change_props):
                notify_on_change_props = notify_on_change_props()
            if notify_on_change_props == "all" or (
                not notify_on_change_props and not self._tracked_props
            ):
                return True

            included_props = set(notify_on_change_props or self._tracked_props)
            if self.options.throw_on_error:
                included_props.add("error")

            return any(
                not same_value(getattr(next_result, key), getattr(prev_result, key))
                for key in included_props
                if hasattr(next_result, key)
            )

        self._notify(listeners=should_notify_listeners())

    def on_query_update(self) -> None:
        self.update_result()
        if self.has_listeners():
            self._update_timers()

    def _update_query(self) -> None:
        query = self._client.get_query_cache().build(self._client, self.options)

        if query is self._current_query:
            return

        prev_query = self._current_query
        self._current_query = query
        self._current_query_initial_state = query.state

        if self.has_listeners():
            if prev_query is not None:
                prev_query.remove_observer(self)
            query.add_observer(self)

    def _update_stale_timeout(self) -> None:
        self._clear_stale_timeout()
        stale_time = resolve_stale_time(self.options.stale_time, self._current_query)

        if self._current_result.is_stale or not is_valid_timeout(stale_time):
            return

        loop = get_loop()
        if loop is None:
            return

        remaining = time_until_stale(self._current_result.data_updated_at, stale_time)
        # Fire just past the boundary so the data is stale when we recompute
        self._stale_timeout = loop.call_later(remaining + 0.001, self._on_stale_timeout)

    def _on_stale_timeout(self) -> None:
        self._stale_timeout = None
        if not self._current_result.is_stale:
            self.update_result()

    def _compute_refetch_interval(self) -> Any:
        interval = resolve_option(self.options.refetch_interval, self._current_query)
        return interval if interval is not None else False

    def _update_refetch_interval(self, next_interval: Any) -> None:
        self._clear_refetch_interval()
        self._current_refetch_interval = next_interval

        if (
            not resolve_enabled(self.options.enabled, self._current_query)
            or not is_valid_timeout(next_interval)
            or next_interval == 0
        ):
            return

        self._schedule_refetch_interval()

    def _schedule_refetch_interval(self) -> None:
        loop = get_loop()
        if loop is None:
            return
        self._refetch_interval = loop.call_later(
            self._current_refetch_interval, self._on_refetch_interval
        )

    def _on_refetch_interval(self) -> None:
        self._schedule_refetch_interval()
        if (
            self.options.refetch_interval_in_background
            or self._client.focus_manager.is_focused()
        ):
            self.execute_fetch()

    def _update_timers(self) -> None:
        self._update_stale_timeout()
        self._update_refetch_interval(self._compute_refetch_interval())

    def _clear_stale_timeout(self) -> None:
        if self._stale_timeout is not None:
            self._stale_timeout.cancel()
            self._stale_timeout = None

    def _clear_refetch_interval(self) -> None:
        if self._refetch_interval is not None:
            self._refetch_interval.cancel()
            self._refetch_interval = None

    def _notify(self, listeners: bool) -> None:
        def run() -> None:
            if listeners:
                for listener in self.snapshot_listeners():
                    notify_manager.schedule(
                        lambda listener=listener: self._deliver(listener),
                        key=(self, listener),
                    )
            self._client.get_query_cache().notify(
                QueryCacheNotifyEvent("observerResultsUpdated", self._current_query)
            )

        notify_manager.batch(run)

    def _deliver(self, listener: ResultListener) -> None:
        # The listener may have unsubscribed while the delivery was queued
        if listener in self.listeners:
            listener(self._current_result)
