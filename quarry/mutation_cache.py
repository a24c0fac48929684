"""
quarry MutationCache - Mutation Registry and Scope Scheduling
=============================================================

Keeps every Mutation built by the client until it is removed, cleared or
collected. Mutations that share ``options.scope`` run strictly one at a time
in submission order: a later mutation of the scope starts paused and is
resumed when the one before it settles.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from .events import MutationCacheNotifyEvent
from .mutation import Mutation, MutationState
from .notify_manager import notify_manager
from .options import MutationFilters, MutationOptions, as_filters
from .subscribable import Subscribable
from .util.keys import match_mutation

if TYPE_CHECKING:
    from .query_client import QueryClient

MutationCacheListener = Callable[[MutationCacheNotifyEvent], None]


@dataclass
class MutationCacheConfig:
    on_mutate: Optional[Callable[[Any, Mutation], Any]] = None
    on_error: Optional[Callable[[Exception, Any, Any, Mutation], Any]] = None
    on_success: Optional[Callable[[Any, Any, Any, Mutation], Any]] = None
    on_settled: Optional[Callable[[Any, Optional[Exception], Any, Any, Mutation], Any]] = None


class MutationCache(Subscribable[MutationCacheListener]):
    def __init__(self, config: Optional[MutationCacheConfig] = None) -> None:
        super().__init__()
        self.config = config or MutationCacheConfig()
        self._mutations: List[Mutation] = []
        self._scopes: Dict[str, List[Mutation]] = {}
        self._mutation_id = 0

    def build(
        self,
        client: "QueryClient",
        options: MutationOptions,
        state: Optional[MutationState] = None,
    ) -> Mutation:
        self._mutation_id += 1
        mutation = Mutation(
            client=client,
            cache=self,
            mutation_id=self._mutation_id,
            options=client.default_mutation_options(options),
            state=state,
        )
        self.add(mutation)
        return mutation

    def add(self, mutation: Mutation) -> None:
        self._mutations.append(mutation)
        scope = mutation.options.scope
        if scope is not None:
            self._scopes.setdefault(scope, []).append(mutation)
        self.notify(MutationCacheNotifyEvent("added", mutation))

    def remove(self, mutation: Mutation) -> None:
        if mutation not in self._mutations:
            return
        self._mutations.remove(mutation)

        scope = mutation.options.scope
        if scope is not None:
            scoped = self._scopes.get(scope, [])
            if mutation in scoped:
                scoped.remove(mutation)
            if not scoped:
                self._scopes.pop(scope, None)

        mutation.destroy()
        logging.debug(f"Removed mutation {mutation.mutation_id}")
        self.notify(MutationCacheNotifyEvent("removed", mutation))

    def can_run(self, mutation: Mutation) -> bool:
        """A scoped mutation runs only while it is the first pending one of its scope."""
        scope = mutation.options.scope
        if scope is None:
            return True
        first_pending = next(
            (m for m in self._scopes.get(scope, []) if m.state.status == "pending"),
            None,
        )
        return first_pending is None or first_pending is mutation

    def run_next(self, mutation: Mutation) -> None:
        scope = mutation.options.scope
        if scope is None:
            return
        next_mutation = next(
            (
                m
                for m in self._scopes.get(scope, [])
                if m is not mutation and m.state.is_paused
            ),
            None,
        )
        if next_mutation is not None:
            next_mutation.continue_()

    def clear(self) -> None:
        def remove_all() -> None:
            for mutation in self.get_all():
                self.remove(mutation)

        notify_manager.batch(remove_all)

    def get_all(self) -> List[Mutation]:
        return list(self._mutations)

    def find(self, filters: Any) -> Optional[Mutation]:
        if not isinstance(filters, MutationFilters):
            filters = dict(filters)
            filters.setdefault("exact", True)
        filters = as_filters(MutationFilters, filters)
        return next((m for m in self._mutations if match_mutation(filters, m)), None)

    def find_all(self, filters: Any = None) -> List[Mutation]:
        filters = as_filters(MutationFilters, filters)
        return [m for m in self._mutations if match_mutation(filters, m)]

    def notify(self, event: MutationCacheNotifyEvent) -> None:
        def deliver() -> None:
            for listener in self.snapshot_listeners():
                listener(event)

        notify_manager.batch(deliver)

    async def resume_paused_mutations(self) -> None:
        paused = [m for m in self._mutations if m.state.is_paused]
        if not paused:
            return
        logging.debug(f"Resuming {len(paused)} paused mutation(s)")
        # Failures were already recorded on each mutation
        await asyncio.gather(*(m.continue_() for m in paused), return_exceptions=True)

    def __len__(self) -> int:
        return len(self._mutations)
