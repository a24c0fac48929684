"""
quarry InfiniteQueryObserver - Paged Observer
=============================================

A QueryObserver for infinite queries. It installs the paged fetch behavior,
exposes ``fetch_next_page`` / ``fetch_previous_page`` and extends the result
with page flags. ``is_refetching`` and ``is_refetch_error`` only describe full
refetches here; page fetches have their own flags, and a failed page fetch
leaves the pages already loaded untouched.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .infinite_query_behavior import has_next_page, has_previous_page, infinite_query_behavior
from .options import FetchOptions, QueryOptions, merge_options
from .query import Query
from .query_observer import QueryObserver, QueryObserverResult


@dataclass(frozen=True)
class InfiniteQueryObserverResult(QueryObserverResult):
    has_next_page: bool = False
    has_previous_page: bool = False
    is_fetching_next_page: bool = False
    is_fetching_previous_page: bool = False
    is_fetch_next_page_error: bool = False
    is_fetch_previous_page_error: bool = False
    fetch_next_page: Optional[Callable[..., Any]] = field(
        default=None, compare=False, repr=False
    )
    fetch_previous_page: Optional[Callable[..., Any]] = field(
        default=None, compare=False, repr=False
    )


_paged_behavior = infinite_query_behavior()


def _with_behavior(options: Any) -> QueryOptions:
    return merge_options(QueryOptions, options, {"behavior": _paged_behavior})


class InfiniteQueryObserver(QueryObserver):
    def set_options(self, options: Any) -> None:
        super().set_options(_with_behavior(options))

    def get_optimistic_result(self, options: Any) -> InfiniteQueryObserverResult:
        return super().get_optimistic_result(_with_behavior(options))

    async def fetch_next_page(
        self, cancel_refetch: bool = True, throw_on_error: bool = False
    ) -> InfiniteQueryObserverResult:
        return await self.fetch(
            FetchOptions(
                cancel_refetch=cancel_refetch,
                meta={"fetch_more": {"direction": "forward"}},
            ),
            throw_on_error=throw_on_error,
        )

    async def fetch_previous_page(
        self, cancel_refetch: bool = True, throw_on_error: bool = False
    ) -> InfiniteQueryObserverResult:
        return await self.fetch(
            FetchOptions(
                cancel_refetch=cancel_refetch,
                meta={"fetch_more": {"direction": "backward"}},
            ),
            throw_on_error=throw_on_error,
        )

    def _build_result(
        self, query: Query, options: QueryOptions, **fields: Any
    ) -> InfiniteQueryObserverResult:
        state = query.state
        fetch_more = (state.fetch_meta or {}).get("fetch_more") or {}
        direction = fetch_more.get("direction")
        is_fetching = fields["is_fetching"]
        is_error = fields["is_error"]

        is_fetch_next_page_error = is_error and direction == "forward"
        is_fetching_next_page = is_fetching and direction == "forward"
        is_fetch_previous_page_error = is_error and direction == "backward"
        is_fetching_previous_page = is_fetching and direction == "backward"

        fields["is_refetching"] = (
            fields["is_refetching"]
            and not is_fetching_next_page
            and not is_fetching_previous_page
        )
        fields["is_refetch_error"] = (
            fields["is_refetch_error"]
            and not is_fetch_next_page_error
            and not is_fetch_previous_page_error
        )

        return InfiniteQueryObserverResult(
            **fields,
            has_next_page=has_next_page(options, state.data),
            has_previous_page=has_previous_page(options, state.data),
            is_fetching_next_page=is_fetching_next_page,
            is_fetching_previous_page=is_fetching_previous_page,
            is_fetch_next_page_error=is_fetch_next_page_error,
            is_fetch_previous_page_error=is_fetch_previous_page_error,
            fetch_next_page=self.fetch_next_page,
            fetch_previous_page=self.fetch_previous_page,
        )
