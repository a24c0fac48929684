"""
quarry Utils - Keys, Structural Sharing and Timing
==================================================

Helpers shared by the cache, the query state machine and the observers.

Modules:
- keys: fingerprinting and filter matching for query/mutation keys
- structural: structural sharing and shallow result comparison
- timing: staleness arithmetic, timeouts and the default retry backoff
- aio: awaiting user hooks that may be coroutines
"""

from .aio import consume_exception, maybe_await
from .keys import (
    QueryKey,
    hash_key,
    hash_query_key_by_options,
    match_mutation,
    match_query,
    partial_match_key,
)
from .structural import (
    functional_update,
    replace_data,
    replace_equal_deep,
    same_value,
    shallow_equal_objects,
)
from .timing import (
    DEFAULT_GC_TIME,
    cancellable_sleep,
    default_retry_delay,
    get_loop,
    is_valid_timeout,
    now,
    time_until_stale,
)

__all__ = [
    "consume_exception",
    "maybe_await",
    "QueryKey",
    "hash_key",
    "hash_query_key_by_options",
    "match_mutation",
    "match_query",
    "partial_match_key",
    "functional_update",
    "replace_data",
    "replace_equal_deep",
    "same_value",
    "shallow_equal_objects",
    "DEFAULT_GC_TIME",
    "cancellable_sleep",
    "default_retry_delay",
    "get_loop",
    "is_valid_timeout",
    "now",
    "time_until_stale",
]
