"""
quarry Options - Option, Filter and Data Containers
===================================================

Options are layered: client-wide defaults, per-key defaults registered with
``set_query_defaults``, then the options passed to a call. Every field left
as ``None`` inherits from the layer below and finally from the built-in
default used where the option is read:

| option | built-in default |
| --- | --- |
| ``stale_time`` | ``0`` (fresh data is immediately stale) |
| ``gc_time`` | ``300.0`` seconds |
| ``retry`` | ``3`` for queries, ``0`` for mutations |
| ``retry_delay`` | ``min(1.0 * 2 ** failure_count, 30.0)`` |
| ``network_mode`` | ``"online"`` |
| ``enabled`` | ``True`` |
| ``refetch_on_window_focus`` / ``refetch_on_reconnect`` / ``refetch_on_mount`` | ``True`` |
| ``structural_sharing`` | ``True`` |

Anything accepting options also accepts a plain mapping with the same field
names, so ``{"query_key": ["todos"], "query_fn": load_todos}`` works wherever
``QueryOptions(query_key=["todos"], query_fn=load_todos)`` does.
"""

from dataclasses import dataclass, field, fields
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    List,
    Mapping,
    Optional,
    Type,
    TypeVar,
    Union,
)

from .util.keys import QueryKey

TPage = TypeVar("TPage")
TPageParam = TypeVar("TPageParam")
TOptions = TypeVar("TOptions")

NETWORK_MODES = ("online", "always", "offline_first")


class _SkipToken:
    """Marker query function that disables a query."""

    def __repr__(self) -> str:
        return "skip_token"


skip_token = _SkipToken()


@dataclass
class InfiniteData(Generic[TPage, TPageParam]):
    """Pages of an infinite query and the page params used to fetch them."""

    pages: List[TPage] = field(default_factory=list)
    page_params: List[TPageParam] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[Any]]:
        return {"pages": list(self.pages), "page_params": list(self.page_params)}

    @classmethod
    def from_dict(cls, value: Mapping[str, Any]) -> "InfiniteData":
        return cls(list(value["pages"]), list(value["page_params"]))


@dataclass
class QueryOptions:
    """Options for a query, its observers and, optionally, its pages."""

    query_key: Optional[QueryKey] = None
    query_fn: Optional[Any] = None
    query_hash: Optional[str] = None
    query_key_hashing_fn: Optional[Callable[[QueryKey], str]] = None
    retry: Union[bool, int, Callable[[int, Exception], bool], None] = None
    retry_delay: Union[float, Callable[[int, Exception], float], None] = None
    network_mode: Optional[str] = None
    gc_time: Optional[float] = None
    stale_time: Union[float, str, Callable[[Any], float], None] = None
    initial_data: Any = None
    initial_data_updated_at: Union[float, Callable[[], Optional[float]], None] = None
    meta: Optional[Dict[str, Any]] = None
    structural_sharing: Union[bool, Callable[[Any, Any], Any], None] = None
    behavior: Optional[Any] = None

    # Observer options
    enabled: Union[bool, Callable[[Any], bool], None] = None
    select: Optional[Callable[[Any], Any]] = None
    placeholder_data: Any = None
    refetch_interval: Union[float, bool, Callable[[Any], Any], None] = None
    refetch_interval_in_background: Optional[bool] = None
    refetch_on_window_focus: Union[bool, str, Callable[[Any], Any], None] = None
    refetch_on_reconnect: Union[bool, str, Callable[[Any], Any], None] = None
    refetch_on_mount: Union[bool, str, Callable[[Any], Any], None] = None
    retry_on_mount: Optional[bool] = None
    notify_on_change_props: Union[str, List[str], Callable[[], Any], None] = None
    throw_on_error: Union[bool, Callable[[Exception, Any], bool], None] = None

    # Infinite query options
    initial_page_param: Any = None
    get_next_page_param: Optional[Callable[..., Any]] = None
    get_previous_page_param: Optional[Callable[..., Any]] = None
    max_pages: Optional[int] = None
    pages: Optional[int] = None

    _defaulted: bool = field(default=False, repr=False, compare=False)


@dataclass
class MutationOptions:
    mutation_key: Optional[QueryKey] = None
    mutation_fn: Optional[Callable[[Any], Any]] = None
    on_mutate: Optional[Callable[[Any], Any]] = None
    on_success: Optional[Callable[[Any, Any, Any], Any]] = None
    on_error: Optional[Callable[[Exception, Any, Any], Any]] = None
    on_settled: Optional[Callable[[Any, Optional[Exception], Any, Any], Any]] = None
    retry: Union[bool, int, Callable[[int, Exception], bool], None] = None
    retry_delay: Union[float, Callable[[int, Exception], float], None] = None
    network_mode: Optional[str] = None
    gc_time: Optional[float] = None
    meta: Optional[Dict[str, Any]] = None
    scope: Optional[str] = None
    throw_on_error: Union[bool, Callable[[Exception], bool], None] = None

    _defaulted: bool = field(default=False, repr=False, compare=False)


@dataclass
class DefaultOptions:
    """Client-wide option defaults."""

    queries: Optional[QueryOptions] = None
    mutations: Optional[MutationOptions] = None


@dataclass
class QueryFilters:
    """
    Selects queries for bulk operations.

    ``query_key`` matches as a prefix unless ``exact`` is set; ``type`` is
    ``"all"`` (the default when unset), ``"active"`` (at least one enabled
    observer) or ``"inactive"``.
    """

    query_key: Optional[QueryKey] = None
    exact: bool = False
    type: Optional[str] = None
    stale: Optional[bool] = None
    fetch_status: Optional[str] = None
    status: Optional[str] = None
    predicate: Optional[Callable[[Any], bool]] = None


@dataclass
class MutationFilters:
    mutation_key: Optional[QueryKey] = None
    exact: bool = False
    status: Optional[str] = None
    predicate: Optional[Callable[[Any], bool]] = None


@dataclass
class FetchOptions:
    """Per-fetch switches: supersede a running fetch, and tag the fetch."""

    cancel_refetch: bool = False
    meta: Optional[Dict[str, Any]] = None


def merge_options(cls: Type[TOptions], *layers: Any) -> TOptions:
    """Build a ``cls`` instance from option layers; later non-None values win."""
    values: Dict[str, Any] = {}
    for layer in layers:
        if layer is None:
            continue
        if isinstance(layer, Mapping):
            items = layer.items()
        else:
            items = ((f.name, getattr(layer, f.name)) for f in fields(layer))
        for name, value in items:
            if value is not None and not name.startswith("_"):
                values[name] = value
    return cls(**values)


def as_options(cls: Type[TOptions], value: Any) -> TOptions:
    if isinstance(value, cls):
        return value
    return merge_options(cls, value)


def as_filters(cls: Type[TOptions], value: Any) -> TOptions:
    if value is None:
        return cls()
    if isinstance(value, cls):
        return value
    return cls(**dict(value))


def resolve_option(value: Any, query: Any) -> Any:
    """Options such as ``enabled`` or ``stale_time`` may be functions of the query."""
    return value(query) if callable(value) else value


def resolve_enabled(enabled: Any, query: Any) -> bool:
    resolved = resolve_option(enabled, query)
    return resolved is not False


def resolve_stale_time(stale_time: Any, query: Any) -> Union[float, str]:
    resolved = resolve_option(stale_time, query)
    return 0 if resolved is None else resolved
