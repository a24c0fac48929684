"""
quarry Infinite Queries - Paged Fetch Behavior
==============================================

An infinite query stores ``InfiniteData``: the fetched pages and the page
params that produced them. The behavior installed on such a query replaces
its fetch function with one of three paths:

- fetch the next page (appended) or the previous page (prepended) when the
  fetch is tagged with ``{"fetch_more": {"direction": ...}}``;
- otherwise refetch every cached page, strictly one after another, starting
  from the first recorded page param and deriving each following param from
  the pages fetched so far in this run. Cursors therefore stay consistent even
  when the underlying collection changed since the pages were first loaded.

Page params come from ``get_next_page_param(last_page, all_pages,
last_page_param, all_page_params)`` and its ``get_previous_page_param``
counterpart; returning ``None`` means there is no further page. With
``max_pages`` set, the page furthest from the fetch direction is dropped.

```python
client.fetch_infinite_query({
    "query_key": ["items"],
    "query_fn": lambda ctx: api.list_items(cursor=ctx.page_param),
    "initial_page_param": 0,
    "get_next_page_param": lambda last, pages, param, params: last["next_cursor"],
})
```
"""

import logging
from typing import TYPE_CHECKING, Any, List, Optional, TypeVar

from .errors import CancelledError
from .options import InfiniteData, QueryOptions
from .query import FetchContext, QueryFunctionContext, ensure_query_fn
from .util.aio import maybe_await

if TYPE_CHECKING:
    from .query import Query

T = TypeVar("T")


def add_to_end(items: List[T], item: T, max_items: Optional[int] = 0) -> List[T]:
    new_items = [*items, item]
    return new_items[1:] if max_items and len(new_items) > max_items else new_items


def add_to_start(items: List[T], item: T, max_items: Optional[int] = 0) -> List[T]:
    new_items = [item, *items]
    return new_items[:-1] if max_items and len(new_items) > max_items else new_items


def get_next_page_param(options: QueryOptions, data: InfiniteData) -> Any:
    pages, page_params = data.pages, data.page_params
    if not pages or options.get_next_page_param is None:
        return None
    return options.get_next_page_param(pages[-1], pages, page_params[-1], page_params)


def get_previous_page_param(options: QueryOptions, data: InfiniteData) -> Any:
    pages, page_params = data.pages, data.page_params
    if not pages or options.get_previous_page_param is None:
        return None
    return options.get_previous_page_param(pages[0], pages, page_params[0], page_params)


def has_next_page(options: QueryOptions, data: Optional[InfiniteData]) -> bool:
    if data is None:
        return False
    return get_next_page_param(options, data) is not None


def has_previous_page(options: QueryOptions, data: Optional[InfiniteData]) -> bool:
    if data is None or options.get_previous_page_param is None:
        return False
    return get_previous_page_param(options, data) is not None


class InfiniteQueryBehavior:
    """
    Fetch behavior for paged queries.

    ``pages`` forces a full refetch to load that many pages, regardless of
    how many are cached; ``fetch_infinite_query`` uses it to prefetch
    several pages at once.
    """

    def __init__(self, pages: Optional[int] = None) -> None:
        self.pages = pages

    def on_fetch(self, context: FetchContext, query: "Query") -> None:
        options = context.options
        fetch_more = (context.fetch_options.meta or {}).get("fetch_more") or {}
        direction = fetch_more.get("direction")
        old_data: Optional[InfiniteData] = context.state.data
        old_pages = list(old_data.pages) if old_data else []
        old_page_params = list(old_data.page_params) if old_data else []

        async def fetch_page(data: InfiniteData, param: Any, previous: bool = False) -> InfiniteData:
            if context.signal.aborted:
                raise CancelledError()

            if param is None and data.pages:
                return data

            query_fn = ensure_query_fn(context.options)
            query_fn_context = QueryFunctionContext(
                query_key=context.query_key,
                signal=context.signal,
                meta=options.meta,
                client=context.client,
                page_param=param,
                direction="backward" if previous else "forward",
                on_signal_read=context.on_signal_read,
            )
            page = await maybe_await(query_fn(query_fn_context))

            if previous:
                return InfiniteData(
                    add_to_start(data.pages, page, options.max_pages),
                    add_to_start(data.page_params, param, options.max_pages),
                )
            return InfiniteData(
                add_to_end(data.pages, page, options.max_pages),
                add_to_end(data.page_params, param, options.max_pages),
            )

        async def fetch_fn() -> InfiniteData:
            if direction and old_pages:
                previous = direction == "backward"
                current = InfiniteData(old_pages, old_page_params)
                if previous:
                    param = get_previous_page_param(options, current)
                else:
                    param = get_next_page_param(options, current)
                return await fetch_page(current, param, previous)

            remaining_pages = self.pages if self.pages is not None else len(old_pages)
            logging.debug(
                f"Refetching {max(remaining_pages, 1)} page(s) of {query.query_hash}"
            )

            param = old_page_params[0] if old_page_params else options.initial_page_param
            result = await fetch_page(InfiniteData(), param)
            current_page = 1

            # Each param derives from the pages fetched in this run
            while current_page < remaining_pages:
                param = get_next_page_param(options, result)
                if param is None:
                    break
                result = await fetch_page(result, param)
                current_page += 1

            return result

        context.fetch_fn = fetch_fn


def infinite_query_behavior(pages: Optional[int] = None) -> InfiniteQueryBehavior:
    return InfiniteQueryBehavior(pages)
