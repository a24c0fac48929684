"""
quarry Query - Per-Key State Machine
====================================

A Query owns the cached state for one query key: the last data and error,
the fetch status, failure counters and the staleness flag. It runs fetches
through a Retryer, deduplicates concurrent fetch requests and notifies its
observers and its cache after every state transition.

State Transitions
-----------------

All changes go through a small reducer. Each action produces a new
``QueryState`` (states are never mutated in place):

| action | effect |
| --- | --- |
| ``fetch`` | ``fetch_status`` becomes ``fetching`` (``paused`` when offline); a query without data goes back to ``pending`` |
| ``failed`` | a retryable attempt failed; records ``fetch_failure_count``/``fetch_failure_reason`` |
| ``pause`` / ``continue`` | the Retryer paused or resumed |
| ``success`` | new data, ``status`` becomes ``success``, the invalidation flag is cleared |
| ``error`` | the fetch failed for good; ``status`` becomes ``error`` |
| ``invalidate`` | marks the data stale regardless of ``stale_time`` |
| ``set_state`` | merges arbitrary fields (hydration, cancellation revert) |

Fetch Lifecycle
---------------

``fetch()`` returns an ``asyncio.Task`` that resolves with the query data.
While a fetch is running, another ``fetch()`` call either *joins* it (the
same task is returned) or, when the caller asks for ``cancel_refetch`` and
data is already present, *supersedes* it: the running fetch is silently
cancelled and its awaiters are handed over to the new fetch. A fetch that has
been superseded or cancelled never writes to the state, even if its operation
completes later.

```python
query = client.get_query_cache().build(client, {"query_key": ["todo", 1], "query_fn": load})
data = await query.fetch()
query.state.status          # "success"
query.is_stale_by_time(60)  # False for the next minute
```
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

from .abort import AbortController, AbortSignal
from .errors import CancelledError, MissingQueryFunctionError
from .events import QueryCacheNotifyEvent
from .notify_manager import notify_manager
from .options import (
    FetchOptions,
    QueryOptions,
    merge_options,
    resolve_enabled,
    resolve_stale_time,
    skip_token,
)
from .removable import Removable
from .retryer import Retryer, can_fetch
from .util.aio import consume_exception, maybe_await
from .util.keys import QueryKey
from .util.structural import replace_data
from .util.timing import now, time_until_stale

if TYPE_CHECKING:
    from .query_cache import QueryCache
    from .query_client import QueryClient


@dataclass(frozen=True)
class QueryState:
    data: Any = None
    data_update_count: int = 0
    data_updated_at: float = 0
    error: Optional[Exception] = None
    error_update_count: int = 0
    error_updated_at: float = 0
    fetch_failure_count: int = 0
    fetch_failure_reason: Optional[Exception] = None
    fetch_meta: Optional[Dict[str, Any]] = None
    is_invalidated: bool = False
    status: str = "pending"
    fetch_status: str = "idle"


class QueryFunctionContext:
    """
    Argument passed to every query function.

    Reading ``signal`` tells the query that the function honors abortion, so
    the fetch may be cancelled outright when its last observer leaves.
    """

    def __init__(
        self,
        query_key: QueryKey,
        signal: AbortSignal,
        meta: Optional[Dict[str, Any]] = None,
        client: Optional["QueryClient"] = None,
        page_param: Any = None,
        direction: Optional[str] = None,
        on_signal_read: Optional[Callable[[], None]] = None,
    ) -> None:
        self.query_key = query_key
        self.meta = meta
        self.client = client
        self.page_param = page_param
        self.direction = direction
        self._signal = signal
        self._on_signal_read = on_signal_read

    @property
    def signal(self) -> AbortSignal:
        if self._on_signal_read is not None:
            self._on_signal_read()
        return self._signal

    def __repr__(self) -> str:
        return f"QueryFunctionContext(query_key={self.query_key!r})"


@dataclass
class FetchContext:
    """
    Everything a fetch behavior may inspect or replace before a fetch starts.

    Behaviors (such as the infinite query behavior) swap ``fetch_fn`` for one
    that fetches several pages.
    """

    fetch_options: FetchOptions
    options: QueryOptions
    query_key: QueryKey
    client: "QueryClient"
    state: QueryState
    signal: AbortSignal
    fetch_fn: Callable[[], Any]
    on_signal_read: Callable[[], None]


def ensure_query_fn(options: QueryOptions) -> Callable[[QueryFunctionContext], Any]:
    if options.query_fn is skip_token:
        raise MissingQueryFunctionError(
            f"Attempted to invoke query_fn when set to skip_token for '{options.query_hash}'"
        )
    if options.query_fn is None:
        raise MissingQueryFunctionError(f"Missing query_fn: '{options.query_hash}'")
    return options.query_fn


def get_default_state(options: QueryOptions) -> QueryState:
    data = options.initial_data() if callable(options.initial_data) else options.initial_data
    if data is None:
        return QueryState()

    updated_at = options.initial_data_updated_at
    if callable(updated_at):
        updated_at = updated_at()
    return QueryState(
        data=data,
        data_updated_at=updated_at if updated_at is not None else now(),
        status="success",
    )


def fetch_state(data: Any, options: QueryOptions, online_manager: Any) -> Dict[str, Any]:
    """Fields set when a fetch starts."""
    state: Dict[str, Any] = {
        "fetch_failure_count": 0,
        "fetch_failure_reason": None,
        "fetch_status": "fetching"
        if can_fetch(options.network_mode, online_manager)
        else "paused",
    }
    if data is None:
        state.update(error=None, status="pending")
    return state


class Query(Removable):
    def __init__(
        self,
        client: "QueryClient",
        cache: "QueryCache",
        query_key: QueryKey,
        query_hash: str,
        options: Optional[QueryOptions] = None,
        state: Optional[QueryState] = None,
    ) -> None:
        super().__init__()
        self._client = client
        self._cache = cache
        self.query_key = query_key
        self.query_hash = query_hash
        self.observers: List[Any] = []

        # Only per-key defaults persist; the building caller's options do not
        self._default_options = client.get_query_defaults(query_key)
        self.options = merge_options(QueryOptions, self._default_options, options)
        self.update_gc_time(self.options.gc_time)
        self._initial_state = state if state is not None else get_default_state(self.options)
        self.state: QueryState = self._initial_state

        self._retryer: Optional[Retryer] = None
        self._fetch_task: Optional[asyncio.Task] = None
        self._generation = 0
        self._revert_state: Optional[QueryState] = None
        self._abort_signal_consumed = False

        self.schedule_gc()

    @property
    def meta(self) -> Optional[Dict[str, Any]]:
        return self.options.meta

    @property
    def promise(self) -> Optional["asyncio.Task"]:
        """The task of the most recent fetch, if any."""
        return self._fetch_task

    def set_options(self, options: Optional[QueryOptions] = None) -> None:
        self.options = merge_options(QueryOptions, self._default_options, options)
        self.update_gc_time(self.options.gc_time)

        # initial_data supplied by a later caller seeds a query that has none
        if self.state.data is None:
            default_state = get_default_state(self.options)
            if default_state.data is not None:
                self.set_state(
                    {
                        "data": default_state.data,
                        "data_updated_at": default_state.data_updated_at,
                        "error": None,
                        "is_invalidated": False,
                        "status": "success",
                    }
                )
                self._initial_state = default_state

    def optional_remove(self) -> None:
        if not self.observers and self.state.fetch_status == "idle":
            logging.debug(f"Garbage collecting query {self.query_hash}")
            self._cache.remove(self)

    def set_data(
        self,
        new_data: Any,
        updated_at: Optional[float] = None,
        manual: bool = False,
    ) -> Any:
        data = replace_data(self.state.data, new_data, self.options)
        self._dispatch(
            {
                "type": "success",
                "data": data,
                "data_updated_at": updated_at,
                "manual": manual,
            }
        )
        return data

    def set_state(self, state: Union[QueryState, Dict[str, Any]]) -> None:
        if isinstance(state, QueryState):
            state = {f.name: getattr(state, f.name) for f in dataclasses.fields(state)}
        self._dispatch({"type": "set_state", "state": state})

    def cancel(self, revert: bool = True, silent: bool = False) -> Optional["asyncio.Task"]:
        """Cancel the running fetch; awaiters of a reverted fetch get the previous data."""
        task = self._fetch_task
        if self._retryer is not None:
            self._retryer.cancel(revert=revert, silent=silent)
        return task

    def destroy(self) -> None:
        super().destroy()
        self.cancel(revert=False, silent=True)

    def reset(self) -> None:
        self.destroy()
        self.set_state(self._initial_state)

    def is_active(self) -> bool:
        return any(
            resolve_enabled(observer.options.enabled, self) for observer in self.observers
        )

    def is_disabled(self) -> bool:
        if self.get_observers_count() > 0:
            return not self.is_active()
        return (
            self.options.query_fn is skip_token
            or self.state.data_update_count + self.state.error_update_count == 0
        )

    def is_static(self) -> bool:
        if self.get_observers_count() > 0:
            return any(
                resolve_stale_time(observer.options.stale_time, self) == "static"
                for observer in self.observers
            )
        return False

    def is_stale(self) -> bool:
        if self.get_observers_count() > 0:
            return any(observer.current_result.is_stale for observer in self.observers)
        return self.state.data is None or self.state.is_invalidated

    def is_stale_by_time(self, stale_time: Union[float, str, None] = 0) -> bool:
        if self.state.data is None:
            return True
        if stale_time == "static":
            return False
        if self.state.is_invalidated:
            return True
        return not time_until_stale(self.state.data_updated_at, stale_time)

    def on_focus(self) -> None:
        observer = next(
            (o for o in self.observers if o.should_fetch_on_window_focus()), None
        )
        if observer is not None:
            observer.execute_fetch(FetchOptions(cancel_refetch=False))
        if self._retryer is not None:
            self._retryer.continue_()

    def on_online(self) -> None:
        observer = next((o for o in self.observers if o.should_fetch_on_reconnect()), None)
        if observer is not None:
            observer.execute_fetch(FetchOptions(cancel_refetch=False))
        if self._retryer is not None:
            self._retryer.continue_()

    def add_observer(self, observer: Any) -> None:
        if observer in self.observers:
            return
        self.observers.append(observer)
        # Observed queries are never collected
        self.clear_gc_timeout()
        self._cache.notify(QueryCacheNotifyEvent("observerAdded", self, observer=observer))

    def remove_observer(self, observer: Any) -> None:
        if observer not in self.observers:
            return
        self.observers.remove(observer)

        if not self.observers:
            if self._retryer is not None:
                if self._abort_signal_consumed:
                    self._retryer.cancel(revert=True)
                else:
                    self._retryer.cancel_retry()
            self.schedule_gc()

        self._cache.notify(QueryCacheNotifyEvent("observerRemoved", self, observer=observer))

    def get_observers_count(self) -> int:
        return len(self.observers)

    def invalidate(self) -> None:
        if not self.state.is_invalidated:
            self._dispatch({"type": "invalidate"})

    def fetch(
        self,
        options: Optional[QueryOptions] = None,
        fetch_options: Optional[FetchOptions] = None,
    ) -> "asyncio.Task":
        """
        Start a fetch, or join the one already running.

        Must be called from a running event loop. The returned task resolves
        with the new data, or raises the operation's final error.
        """
        fetch_options = fetch_options or FetchOptions()

        if self.state.fetch_status != "idle" and self._fetch_task is not None:
            if self.state.data is not None and fetch_options.cancel_refetch:
                logging.debug(f"Superseding running fetch of {self.query_hash}")
                self.cancel(silent=True)
            else:
                if self._retryer is not None:
                    # A caller wants the result; undo a cancel_retry from an unmount
                    self._retryer.continue_retry()
                return self._fetch_task

        if options is not None:
            self.set_options(options)

        # Borrow the query function from an observer when built without one
        if self.options.query_fn is None:
            observer = next(
                (o for o in self.observers if o.options.query_fn is not None), None
            )
            if observer is not None:
                self.set_options(observer.options)

        controller = AbortController()
        self._abort_signal_consumed = False

        def on_signal_read() -> None:
            self._abort_signal_consumed = True

        def fetch_fn() -> Any:
            query_fn = ensure_query_fn(self.options)
            query_fn_context = QueryFunctionContext(
                query_key=self.query_key,
                signal=controller.signal,
                meta=self.meta,
                client=self._client,
                on_signal_read=on_signal_read,
            )
            return query_fn(query_fn_context)

        context = FetchContext(
            fetch_options=fetch_options,
            options=self.options,
            query_key=self.query_key,
            client=self._client,
            state=self.state,
            signal=controller.signal,
            fetch_fn=fetch_fn,
            on_signal_read=on_signal_read,
        )
        if self.options.behavior is not None:
            self.options.behavior.on_fetch(context, self)

        self._revert_state = self.state

        if (
            self.state.fetch_status == "idle"
            or self.state.fetch_meta != context.fetch_options.meta
        ):
            self._dispatch({"type": "fetch", "meta": context.fetch_options.meta})

        self._generation += 1
        generation = self._generation

        def guarded(action: Callable[..., Dict[str, Any]]) -> Callable[..., None]:
            def dispatch(*args: Any) -> None:
                if generation == self._generation:
                    self._dispatch(action(*args))

            return dispatch

        retry = context.options.retry
        self._retryer = Retryer(
            context.fetch_fn,
            abort=controller.abort,
            on_fail=guarded(
                lambda count, error: {
                    "type": "failed",
                    "failure_count": count,
                    "error": error,
                }
            ),
            on_pause=guarded(lambda: {"type": "pause"}),
            on_continue=guarded(lambda: {"type": "continue"}),
            retry=retry,
            retry_delay=context.options.retry_delay,
            network_mode=context.options.network_mode,
            focus_manager=self._client.focus_manager,
            online_manager=self._client.online_manager,
        )

        self._fetch_task = asyncio.ensure_future(self._settle(self._retryer, generation))
        self._fetch_task.add_done_callback(consume_exception)
        return self._fetch_task

    async def _settle(self, retryer: Retryer, generation: int) -> Any:
        try:
            try:
                data = await retryer.start()
            except CancelledError as error:
                if error.silent:
                    if generation != self._generation and self._fetch_task is not None:
                        return await asyncio.shield(self._fetch_task)
                    raise
                if generation == self._generation:
                    if error.revert and self._revert_state is not None:
                        self.set_state(
                            dataclasses.replace(self._revert_state, fetch_status="idle")
                        )
                    else:
                        self.set_state({"fetch_status": "idle"})
                if self.state.data is None:
                    raise
                return self.state.data
            except asyncio.CancelledError:
                # The fetch task itself was cancelled; leave the query idle
                if generation == self._generation:
                    retryer.cancel(revert=True)
                    if self._revert_state is not None:
                        self.set_state(
                            dataclasses.replace(self._revert_state, fetch_status="idle")
                        )
                    else:
                        self.set_state({"fetch_status": "idle"})
                raise
            except Exception as error:
                if generation == self._generation:
                    self._dispatch({"type": "error", "error": error})
                    await self._run_cache_hooks(None, error)
                raise

            if generation != self._generation:
                # Settled after being superseded; the newer fetch owns the state
                return data

            if data is None:
                error = TypeError(f"Query data cannot be None. Query key: {self.query_hash}")
                logging.error(str(error))
                self._dispatch({"type": "error", "error": error})
                await self._run_cache_hooks(None, error)
                raise error

            data = self.set_data(data)
            await self._run_cache_hooks(data, None)
            return data
        finally:
            if generation == self._generation:
                self.schedule_gc()

    async def _run_cache_hooks(self, data: Any, error: Optional[Exception]) -> None:
        config = self._cache.config
        if error is None:
            if config.on_success is not None:
                await maybe_await(config.on_success(data, self))
        elif config.on_error is not None:
            await maybe_await(config.on_error(error, self))
        if config.on_settled is not None:
            await maybe_await(config.on_settled(data, error, self))

    def _dispatch(self, action: Dict[str, Any]) -> None:
        self.state = self._reduce(self.state, action)

        def notify() -> None:
            for observer in list(self.observers):
                observer.on_query_update()
            self._cache.notify(QueryCacheNotifyEvent("updated", self, action=action))

        notify_manager.batch(notify)

    def _reduce(self, state: QueryState, action: Dict[str, Any]) -> QueryState:
        action_type = action["type"]

        if action_type == "failed":
            return dataclasses.replace(
                state,
                fetch_failure_count=action["failure_count"],
                fetch_failure_reason=action["error"],
            )
        if action_type == "pause":
            return dataclasses.replace(state, fetch_status="paused")
        if action_type == "continue":
            return dataclasses.replace(state, fetch_status="fetching")
        if action_type == "fetch":
            return dataclasses.replace(
                state,
                fetch_meta=action.get("meta"),
                **fetch_state(state.data, self.options, self._client.online_manager),
            )
        if action_type == "success":
            updated_at = action.get("data_updated_at")
            new_state = dataclasses.replace(
                state,
                data=action["data"],
                data_update_count=state.data_update_count + 1,
                data_updated_at=updated_at if updated_at is not None else now(),
                error=None,
                is_invalidated=False,
                status="success",
            )
            if action.get("manual"):
                # A cancel that reverts should land on manually written data
                self._revert_state = new_state
            else:
                new_state = dataclasses.replace(
                    new_state,
                    fetch_status="idle",
                    fetch_failure_count=0,
                    fetch_failure_reason=None,
                )
            return new_state
        if action_type == "error":
            error = action["error"]
            return dataclasses.replace(
                state,
                error=error,
                error_update_count=state.error_update_count + 1,
                error_updated_at=now(),
                fetch_failure_count=state.fetch_failure_count + 1,
                fetch_failure_reason=error,
                fetch_status="idle",
                status="error",
            )
        if action_type == "invalidate":
            return dataclasses.replace(state, is_invalidated=True)
        if action_type == "set_state":
            return dataclasses.replace(state, **action["state"])

        raise ValueError(f"Unknown query action: {action_type}")

    def __repr__(self) -> str:
        return (
            f"Query({self.query_hash}, status={self.state.status}, "
            f"fetch_status={self.state.fetch_status})"
        )
