"""
quarry Mutation - Write-Side State Machine
==========================================

A Mutation is one invocation of a write operation. Unlike queries, mutations
are not content addressed: every ``mutate`` call builds a new Mutation with
an incrementing id. Its state moves ``idle -> pending -> success | error``;
while pending it may pause (offline, or waiting for an earlier mutation of
the same scope) and resume later.

Lifecycle hooks run in this order around the operation:

1. ``MutationCacheConfig.on_mutate(variables, mutation)``
2. ``options.on_mutate(variables)``; its return value becomes ``context``
3. the mutation function, with retries (none by default)
4. cache then option ``on_success`` / ``on_error``
5. cache then option ``on_settled``

Any hook may be a coroutine function.
"""

import asyncio
import dataclasses
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .errors import MissingMutationFunctionError
from .events import MutationCacheNotifyEvent
from .notify_manager import notify_manager
from .options import MutationOptions
from .removable import Removable
from .retryer import Retryer
from .util.aio import consume_exception, maybe_await
from .util.timing import now

if TYPE_CHECKING:
    from .mutation_cache import MutationCache
    from .query_client import QueryClient


@dataclass(frozen=True)
class MutationState:
    context: Any = None
    data: Any = None
    error: Optional[Exception] = None
    failure_count: int = 0
    failure_reason: Optional[Exception] = None
    is_paused: bool = False
    status: str = "idle"
    variables: Any = None
    submitted_at: float = 0


class Mutation(Removable):
    def __init__(
        self,
        client: "QueryClient",
        cache: "MutationCache",
        mutation_id: int,
        options: MutationOptions,
        state: Optional[MutationState] = None,
    ) -> None:
        super().__init__()
        self._client = client
        self._cache = cache
        self.mutation_id = mutation_id
        self.state: MutationState = state or MutationState()
        self._observers: List[Any] = []
        self._retryer: Optional[Retryer] = None

        self.set_options(options)
        self.schedule_gc()

    @property
    def meta(self) -> Optional[Dict[str, Any]]:
        return self.options.meta

    def set_options(self, options: MutationOptions) -> None:
        self.options = options
        self.update_gc_time(self.options.gc_time)

    def add_observer(self, observer: Any) -> None:
        if observer in self._observers:
            return
        self._observers.append(observer)
        self.clear_gc_timeout()
        self._cache.notify(
            MutationCacheNotifyEvent("observerAdded", self, observer=observer)
        )

    def remove_observer(self, observer: Any) -> None:
        if observer not in self._observers:
            return
        self._observers.remove(observer)
        self.schedule_gc()
        self._cache.notify(
            MutationCacheNotifyEvent("observerRemoved", self, observer=observer)
        )

    def optional_remove(self) -> None:
        if self._observers:
            return
        if self.state.status == "pending":
            self.schedule_gc()
        else:
            self._cache.remove(self)

    def continue_(self) -> Any:
        """Resume a paused mutation, or re-run one restored from a snapshot."""
        if self._retryer is not None:
            return self._retryer.continue_()
        task = asyncio.ensure_future(self.execute(self.state.variables))
        task.add_done_callback(consume_exception)
        return task

    async def execute(self, variables: Any) -> Any:
        def mutation_fn() -> Any:
            if self.options.mutation_fn is None:
                raise MissingMutationFunctionError("No mutation_fn found")
            return self.options.mutation_fn(variables)

        self._retryer = Retryer(
            mutation_fn,
            on_fail=lambda count, error: self._dispatch(
                {"type": "failed", "failure_count": count, "error": error}
            ),
            on_pause=lambda: self._dispatch({"type": "pause"}),
            on_continue=lambda: self._dispatch({"type": "continue"}),
            retry=self.options.retry if self.options.retry is not None else 0,
            retry_delay=self.options.retry_delay,
            network_mode=self.options.network_mode,
            can_run=lambda: self._cache.can_run(self),
            focus_manager=self._client.focus_manager,
            online_manager=self._client.online_manager,
        )

        restored = self.state.status == "pending"
        is_paused = not self._retryer.can_start()
        config = self._cache.config

        try:
            if restored:
                self._dispatch({"type": "continue"})
            else:
                self._dispatch(
                    {"type": "pending", "variables": variables, "is_paused": is_paused}
                )
                if config.on_mutate is not None:
                    await maybe_await(config.on_mutate(variables, self))
                context = None
                if self.options.on_mutate is not None:
                    context = await maybe_await(self.options.on_mutate(variables))
                if context is not self.state.context:
                    self._dispatch(
                        {
                            "type": "pending",
                            "context": context,
                            "variables": variables,
                            "is_paused": is_paused,
                        }
                    )

            data = await self._retryer.start()
            context = self.state.context

            if config.on_success is not None:
                await maybe_await(config.on_success(data, variables, context, self))
            if self.options.on_success is not None:
                await maybe_await(self.options.on_success(data, variables, context))
            if config.on_settled is not None:
                await maybe_await(config.on_settled(data, None, variables, context, self))
            if self.options.on_settled is not None:
                await maybe_await(self.options.on_settled(data, None, variables, context))

            self._dispatch({"type": "success", "data": data})
            return data
        except Exception as error:
            context = self.state.context
            try:
                if config.on_error is not None:
                    await maybe_await(config.on_error(error, variables, context, self))
                if self.options.on_error is not None:
                    await maybe_await(self.options.on_error(error, variables, context))
                if config.on_settled is not None:
                    await maybe_await(
                        config.on_settled(None, error, variables, context, self)
                    )
                if self.options.on_settled is not None:
                    await maybe_await(self.options.on_settled(None, error, variables, context))
            finally:
                self._dispatch({"type": "error", "error": error})
            raise
        finally:
            self._cache.run_next(self)

    def _dispatch(self, action: Dict[str, Any]) -> None:
        self.state = self._reduce(self.state, action)

        def notify() -> None:
            for observer in list(self._observers):
                observer.on_mutation_update(action)
            self._cache.notify(MutationCacheNotifyEvent("updated", self, action=action))

        notify_manager.batch(notify)

    def _reduce(self, state: MutationState, action: Dict[str, Any]) -> MutationState:
        action_type = action["type"]

        if action_type == "failed":
            return dataclasses.replace(
                state,
                failure_count=action["failure_count"],
                failure_reason=action["error"],
            )
        if action_type == "pause":
            return dataclasses.replace(state, is_paused=True)
        if action_type == "continue":
            return dataclasses.replace(state, is_paused=False)
        if action_type == "pending":
            return dataclasses.replace(
                state,
                context=action.get("context"),
                data=None,
                failure_count=0,
                failure_reason=None,
                error=None,
                is_paused=action["is_paused"],
                status="pending",
                variables=action["variables"],
                submitted_at=now(),
            )
        if action_type == "success":
            return dataclasses.replace(
                state,
                data=action["data"],
                failure_count=0,
                failure_reason=None,
                error=None,
                status="success",
                is_paused=False,
            )
        if action_type == "error":
            return dataclasses.replace(
                state,
                data=None,
                error=action["error"],
                failure_count=state.failure_count + 1,
                failure_reason=action["error"],
                is_paused=False,
                status="error",
            )

        raise ValueError(f"Unknown mutation action: {action_type}")

    def __repr__(self) -> str:
        return f"Mutation({self.mutation_id}, status={self.state.status})"
