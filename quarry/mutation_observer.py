"""
quarry MutationObserver - Consumer View of Mutations
====================================================

Tracks the most recent mutation started through it and exposes its state as
a ``MutationObserverResult``. Callbacks passed to ``mutate`` fire only for
that call, and only while the observer still has listeners.

```python
observer = MutationObserver(client, {"mutation_fn": create_todo})
observer.subscribe(lambda result: print(result.status))
await observer.mutate({"title": "write docs"})
```
"""

from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from .events import MutationCacheNotifyEvent
from .mutation import Mutation, MutationState
from .notify_manager import notify_manager
from .options import MutationOptions
from .subscribable import Subscribable
from .util.keys import hash_key
from .util.structural import shallow_equal_objects

if TYPE_CHECKING:
    from .query_client import QueryClient


@dataclass(frozen=True)
class MutationObserverResult:
    context: Any
    data: Any
    error: Optional[Exception]
    failure_count: int
    failure_reason: Optional[Exception]
    is_paused: bool
    status: str
    variables: Any
    submitted_at: float
    is_idle: bool
    is_pending: bool
    is_success: bool
    is_error: bool
    mutate: Optional[Callable[..., Any]] = field(default=None, compare=False, repr=False)
    reset: Optional[Callable[[], None]] = field(default=None, compare=False, repr=False)


MutationListener = Callable[[MutationObserverResult], None]


class MutationObserver(Subscribable[MutationListener]):
    def __init__(self, client: "QueryClient", options: Any) -> None:
        super().__init__()
        self._client = client
        self.options: Optional[MutationOptions] = None
        self._current_mutation: Optional[Mutation] = None
        self._current_result: Optional[MutationObserverResult] = None
        self._mutate_options: Optional[Dict[str, Any]] = None

        self.set_options(options)
        self._update_result()

    def set_options(self, options: Any) -> None:
        prev_options = self.options
        self.options = self._client.default_mutation_options(options)

        if prev_options is not None and not shallow_equal_objects(prev_options, self.options):
            self._client.get_mutation_cache().notify(
                MutationCacheNotifyEvent(
                    "observerOptionsUpdated", self._current_mutation, observer=self
                )
            )

        if (
            prev_options is not None
            and prev_options.mutation_key is not None
            and self.options.mutation_key is not None
            and hash_key(prev_options.mutation_key) != hash_key(self.options.mutation_key)
        ):
            self.reset()
        elif (
            self._current_mutation is not None
            and self._current_mutation.state.status == "pending"
        ):
            self._current_mutation.set_options(self.options)

    def on_unsubscribe(self) -> None:
        if not self.has_listeners() and self._current_mutation is not None:
            self._current_mutation.remove_observer(self)

    def on_mutation_update(self, action: Dict[str, Any]) -> None:
        self._update_result()
        self._notify(action)

    def get_current_result(self) -> MutationObserverResult:
        """The latest result; raises its error when ``throw_on_error`` applies."""
        result = self._current_result
        throw_on_error = self.options.throw_on_error
        if result.is_error and throw_on_error:
            if not callable(throw_on_error) or throw_on_error(result.error):
                raise result.error
        return result

    def reset(self) -> None:
        # Detach so the previous mutation can be collected
        if self._current_mutation is not None:
            self._current_mutation.remove_observer(self)
        self._current_mutation = None
        self._update_result()
        self._notify()

    async def mutate(
        self,
        variables: Any = None,
        on_success: Optional[Callable[[Any, Any, Any], Any]] = None,
        on_error: Optional[Callable[[Exception, Any, Any], Any]] = None,
        on_settled: Optional[Callable[[Any, Optional[Exception], Any, Any], Any]] = None,
    ) -> Any:
        """Start a new mutation; per-call callbacks are invoked synchronously."""
        self._mutate_options = {
            "on_success": on_success,
            "on_error": on_error,
            "on_settled": on_settled,
        }

        if self._current_mutation is not None:
            self._current_mutation.remove_observer(self)

        self._current_mutation = self._client.get_mutation_cache().build(
            self._client, self.options
        )
        self._current_mutation.add_observer(self)

        return await self._current_mutation.execute(variables)

    def _update_result(self) -> None:
        state = (
            self._current_mutation.state
            if self._current_mutation is not None
            else MutationState()
        )
        values = {f.name: getattr(state, f.name) for f in fields(state)}
        self._current_result = MutationObserverResult(
            **values,
            is_idle=state.status == "idle",
            is_pending=state.status == "pending",
            is_success=state.status == "success",
            is_error=state.status == "error",
            mutate=self.mutate,
            reset=self.reset,
        )

    def _notify(self, action: Optional[Dict[str, Any]] = None) -> None:
        def run() -> None:
            # Per-call callbacks belong to the consumer that is still listening
            if self._mutate_options is not None and self.has_listeners() and action:
                variables = self._current_result.variables
                context = self._current_result.context
                action_type = action["type"]
                if action_type == "success":
                    if self._mutate_options["on_success"] is not None:
                        self._mutate_options["on_success"](action["data"], variables, context)
                    if self._mutate_options["on_settled"] is not None:
                        self._mutate_options["on_settled"](action["data"], None, variables, context)
                elif action_type == "error":
                    if self._mutate_options["on_error"] is not None:
                        self._mutate_options["on_error"](action["error"], variables, context)
                    if self._mutate_options["on_settled"] is not None:
                        self._mutate_options["on_settled"](
                            None, action["error"], variables, context
                        )

            for listener in self.snapshot_listeners():
                notify_manager.schedule(
                    lambda listener=listener: self._deliver(listener),
                    key=(self, listener),
                )

        notify_manager.batch(run)

    def _deliver(self, listener: MutationListener) -> None:
        if listener in self.listeners:
            listener(self._current_result)
