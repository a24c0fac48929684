"""
quarry - Asynchronous Data Caching and Synchronization

An asyncio engine that caches the results of caller-supplied fetch operations
under structural keys, deduplicates concurrent fetches, retries failures with
backoff, tracks staleness, garbage-collects unused entries and batches change
notifications to any number of observers.
"""

from .abort import AbortController, AbortSignal
from .errors import (
    CancelledError,
    MissingMutationFunctionError,
    MissingQueryFunctionError,
    is_cancelled_error,
)
from .events import MutationCacheNotifyEvent, QueryCacheNotifyEvent
from .focus_manager import FocusManager, focus_manager
from .hydration import dehydrate, hydrate
from .infinite_query_behavior import (
    has_next_page,
    has_previous_page,
    infinite_query_behavior,
)
from .infinite_query_observer import InfiniteQueryObserver, InfiniteQueryObserverResult
from .mutation import Mutation, MutationState
from .mutation_cache import MutationCache, MutationCacheConfig
from .mutation_observer import MutationObserver, MutationObserverResult
from .notify_manager import NotifyManager, notify_manager
from .online_manager import OnlineManager, online_manager
from .options import (
    DefaultOptions,
    FetchOptions,
    InfiniteData,
    MutationFilters,
    MutationOptions,
    QueryFilters,
    QueryOptions,
    skip_token,
)
from .query import Query, QueryFunctionContext, QueryState
from .query_cache import QueryCache, QueryCacheConfig
from .query_client import QueryClient
from .query_observer import (
    QueryObserver,
    QueryObserverResult,
    TrackedResult,
    keep_previous_data,
)
from .retryer import Retryer
from .util.keys import hash_key, partial_match_key

__version__ = "0.1.0"

__all__ = [
    # Client and caches
    "QueryClient",
    "QueryCache",
    "QueryCacheConfig",
    "MutationCache",
    "MutationCacheConfig",
    # Entities
    "Query",
    "QueryState",
    "QueryFunctionContext",
    "Mutation",
    "MutationState",
    # Observers
    "QueryObserver",
    "QueryObserverResult",
    "TrackedResult",
    "InfiniteQueryObserver",
    "InfiniteQueryObserverResult",
    "MutationObserver",
    "MutationObserverResult",
    "keep_previous_data",
    # Options and data containers
    "DefaultOptions",
    "FetchOptions",
    "InfiniteData",
    "MutationFilters",
    "MutationOptions",
    "QueryFilters",
    "QueryOptions",
    "skip_token",
    # Infinite queries
    "infinite_query_behavior",
    "has_next_page",
    "has_previous_page",
    # Services
    "NotifyManager",
    "notify_manager",
    "FocusManager",
    "focus_manager",
    "OnlineManager",
    "online_manager",
    "Retryer",
    "AbortController",
    "AbortSignal",
    # Events
    "QueryCacheNotifyEvent",
    "MutationCacheNotifyEvent",
    # Hydration
    "dehydrate",
    "hydrate",
    # Errors
    "CancelledError",
    "MissingQueryFunctionError",
    "MissingMutationFunctionError",
    "is_cancelled_error",
    # Keys
    "hash_key",
    "partial_match_key",
]
