"""
Query Key Fingerprinting and Matching
=====================================

Query keys are ordered sequences (lists or tuples) of JSON-serializable
segments. The cache indexes queries by a *fingerprint*: a deterministic JSON
rendering of the key in which mapping keys are sorted recursively, so two keys
that differ only in property insertion order share one cache entry.

Bulk operations select queries with filters. A filter key matches partially
when it is a prefix of the query key and every mapping segment in the filter
is contained in the corresponding segment of the query key:

```python
partial_match_key(["todos", {"page": 1, "done": False}], ["todos"])       # True
partial_match_key(["todos", {"page": 1, "done": False}], ["todos", {"page": 1}])  # True
partial_match_key(["todos"], ["todos", 1])                                 # False
```
"""

import json
from typing import Any, Callable, Optional, Sequence

QueryKey = Sequence[Any]


def _validate_key(key: Any) -> None:
    if not isinstance(key, (list, tuple)):
        raise TypeError(
            f"Query keys must be lists or tuples, got {type(key).__name__}: {key!r}"
        )


def _normalize(value: Any) -> Any:
    # Integral floats render like ints so 1 and 1.0 share a fingerprint
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, dict):
        return {key: _normalize(item) for key, item in value.items()}
    return value


def hash_key(key: QueryKey) -> str:
    """
    Return the stable fingerprint of a query or mutation key.

    Raises:
        TypeError: If the key is not a list/tuple or holds values that
            cannot be serialized to JSON.
    """
    _validate_key(key)
    return json.dumps(_normalize(key), sort_keys=True, separators=(",", ":"))


def hash_query_key_by_options(query_key: QueryKey, options: Any = None) -> str:
    """Fingerprint a key with the options' custom hashing function, if any."""
    hash_fn: Optional[Callable[[QueryKey], str]] = getattr(
        options, "query_key_hashing_fn", None
    )
    return (hash_fn or hash_key)(query_key)


def partial_match_key(a: Any, b: Any) -> bool:
    """Check whether ``b`` is a structural subset (prefix/sub-mapping) of ``a``."""
    if a is b:
        return True
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(b) > len(a):
            return False
        return all(partial_match_key(a[i], b[i]) for i in range(len(b)))
    if isinstance(a, dict) and isinstance(b, dict):
        return all(
            key in a and partial_match_key(a[key], value) for key, value in b.items()
        )
    if isinstance(a, (list, tuple, dict)) or isinstance(b, (list, tuple, dict)):
        return False
    if isinstance(a, bool) or isinstance(b, bool):
        return a is b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    return type(a) is type(b) and a == b


def match_query(filters: Any, query: Any) -> bool:
    """Return True when ``query`` satisfies every field set on ``filters``."""
    query_key = filters.query_key
    if query_key is not None:
        if filters.exact:
            if query.query_hash != hash_query_key_by_options(query_key, query.options):
                return False
        elif not partial_match_key(query.query_key, query_key):
            return False

    query_type = filters.type or "all"
    if query_type != "all":
        is_active = query.is_active()
        if query_type == "active" and not is_active:
            return False
        if query_type == "inactive" and is_active:
            return False

    if isinstance(filters.stale, bool) and query.is_stale() != filters.stale:
        return False

    if filters.fetch_status and filters.fetch_status != query.state.fetch_status:
        return False

    if filters.status and filters.status != query.state.status:
        return False

    if filters.predicate is not None and not filters.predicate(query):
        return False

    return True


def match_mutation(filters: Any, mutation: Any) -> bool:
    """Return True when ``mutation`` satisfies every field set on ``filters``."""
    mutation_key = filters.mutation_key
    if mutation_key is not None:
        own_key = mutation.options.mutation_key
        if own_key is None:
            return False
        if filters.exact:
            if hash_key(own_key) != hash_key(mutation_key):
                return False
        elif not partial_match_key(own_key, mutation_key):
            return False

    if filters.status and mutation.state.status != filters.status:
        return False

    if filters.predicate is not None and not filters.predicate(mutation):
        return False

    return True
