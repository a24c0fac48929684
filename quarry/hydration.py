"""
quarry Hydration - Cache Snapshots
==================================

``dehydrate`` turns the cache into a plain dict a persister can serialize;
``hydrate`` loads such a snapshot into a client. Hydrating never replaces
fresher data: an existing query is only overwritten when the snapshot's
``data_updated_at`` is newer.

```python
snapshot = dehydrate(client)
json.dumps(snapshot, default=str)  # data must be serializable by the persister
...
hydrate(other_client, snapshot)
```

By default only successful queries and paused mutations are included.
Infinite query data is stored in its ``{"pages": ..., "page_params": ...}``
form and restored to ``InfiniteData``.
"""

import dataclasses
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional

from .mutation import Mutation, MutationState
from .options import InfiniteData, MutationOptions, QueryOptions
from .query import Query, QueryState

if TYPE_CHECKING:
    from .query_client import QueryClient

_INFINITE_MARKER = "__infinite__"


def default_should_dehydrate_query(query: Query) -> bool:
    return query.state.status == "success"


def default_should_dehydrate_mutation(mutation: Mutation) -> bool:
    return mutation.state.is_paused


def _dump_data(data: Any) -> Any:
    if isinstance(data, InfiniteData):
        return {_INFINITE_MARKER: True, **data.to_dict()}
    return data


def _load_data(data: Any) -> Any:
    if isinstance(data, dict) and data.get(_INFINITE_MARKER):
        return InfiniteData.from_dict(data)
    return data


def dehydrate_query(query: Query) -> Dict[str, Any]:
    state = query.state
    return {
        "query_key": list(query.query_key),
        "query_hash": query.query_hash,
        "meta": query.meta,
        "state": {
            "data": _dump_data(state.data),
            "data_update_count": state.data_update_count,
            "data_updated_at": state.data_updated_at,
            "error_update_count": state.error_update_count,
            "error_updated_at": state.error_updated_at,
            "fetch_failure_count": state.fetch_failure_count,
            "is_invalidated": state.is_invalidated,
            "status": state.status,
        },
    }


def dehydrate_mutation(mutation: Mutation) -> Dict[str, Any]:
    state = mutation.state
    return {
        "mutation_key": mutation.options.mutation_key,
        "scope": mutation.options.scope,
        "meta": mutation.meta,
        "state": {
            "context": state.context,
            "data": state.data,
            "failure_count": state.failure_count,
            "is_paused": state.is_paused,
            "status": state.status,
            "variables": state.variables,
            "submitted_at": state.submitted_at,
        },
    }


def dehydrate(
    client: "QueryClient",
    should_dehydrate_query: Optional[Callable[[Query], bool]] = None,
    should_dehydrate_mutation: Optional[Callable[[Mutation], bool]] = None,
) -> Dict[str, Any]:
    should_dehydrate_query = should_dehydrate_query or default_should_dehydrate_query
    should_dehydrate_mutation = should_dehydrate_mutation or default_should_dehydrate_mutation

    queries = [
        dehydrate_query(query)
        for query in client.get_query_cache().get_all()
        if should_dehydrate_query(query)
    ]
    mutations = [
        dehydrate_mutation(mutation)
        for mutation in client.get_mutation_cache().get_all()
        if should_dehydrate_mutation(mutation)
    ]
    return {"queries": queries, "mutations": mutations}


def hydrate(client: "QueryClient", dehydrated_state: Optional[Dict[str, Any]]) -> None:
    if not isinstance(dehydrated_state, dict):
        return

    query_cache = client.get_query_cache()
    mutation_cache = client.get_mutation_cache()

    for dehydrated in dehydrated_state.get("mutations", []):
        mutation_cache.build(
            client,
            MutationOptions(
                mutation_key=dehydrated.get("mutation_key"),
                scope=dehydrated.get("scope"),
                meta=dehydrated.get("meta"),
            ),
            MutationState(**dehydrated["state"]),
        )

    for dehydrated in dehydrated_state.get("queries", []):
        state = dict(dehydrated["state"])
        state["data"] = _load_data(state.get("data"))
        query = query_cache.get(dehydrated["query_hash"])

        if query is not None:
            if query.state.data_updated_at < state["data_updated_at"]:
                # The local fetch status is kept; a running fetch stays running
                query.set_state(state)
            continue

        logging.debug(f"Hydrating query {dehydrated['query_hash']}")
        query_state = dataclasses.replace(QueryState(**state), fetch_status="idle")
        query_cache.build(
            client,
            QueryOptions(
                query_key=dehydrated["query_key"],
                query_hash=dehydrated["query_hash"],
                meta=dehydrated.get("meta"),
            ),
            query_state,
        )
