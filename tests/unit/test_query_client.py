"""
Tests for QueryClient operations: data access, defaults, invalidation,
cancellation and bulk refetches.
"""

import asyncio

import pytest

from quarry import (
    DefaultOptions,
    MutationCache,
    QueryCache,
    QueryClient,
    QueryObserver,
    QueryOptions,
)

from tests.utils import Recorder, flush, wait_for


def counter_fn():
    calls = {"n": 0}

    async def query_fn(context):
        calls["n"] += 1
        return calls["n"]

    query_fn.calls = calls
    return query_fn


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_fetch_query_returns_fresh_cache_without_fetching(client):
    """fetch_query only calls the query function when data is stale"""
    query_fn = counter_fn()
    options = {"query_key": ["cached"], "query_fn": query_fn, "stale_time": 60}

    assert await client.fetch_query(options) == 1
    assert await client.fetch_query(options) == 1
    assert query_fn.calls["n"] == 1

    assert await client.fetch_query({**options, "stale_time": 0}) == 2


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_fetch_query_does_not_retry_by_default(client):
    """fetch_query raises the first error unless retry is configured"""
    attempts = []

    def query_fn(context):
        attempts.append(True)
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        await client.fetch_query({"query_key": ["down"], "query_fn": query_fn})
    assert len(attempts) == 1
    assert client.get_query_state(["down"]).status == "error"


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_prefetch_query_swallows_errors(client):
    """prefetch_query never raises"""
    def query_fn(context):
        raise ConnectionError("down")

    await client.prefetch_query({"query_key": ["prefetch"], "query_fn": query_fn})

    assert client.get_query_state(["prefetch"]).status == "error"


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_ensure_query_data_prefers_cache(client):
    """ensure_query_data returns cached data and fetches only when missing"""
    query_fn = counter_fn()
    client.set_query_data(["ensure"], "cached")

    assert await client.ensure_query_data({"query_key": ["ensure"], "query_fn": query_fn}) == "cached"
    assert await client.ensure_query_data({"query_key": ["other"], "query_fn": query_fn}) == 1
    assert query_fn.calls["n"] == 1


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_ensure_query_data_revalidates_in_background(client):
    """revalidate_if_stale serves the cache and refreshes it"""
    query_fn = counter_fn()
    client.set_query_data(["revalidate"], 0)

    data = await client.ensure_query_data(
        {"query_key": ["revalidate"], "query_fn": query_fn}, revalidate_if_stale=True
    )

    assert data == 0
    await wait_for(lambda: client.get_query_data(["revalidate"]) == 1)


@pytest.mark.unit
@pytest.mark.query
def test_set_and_get_query_data(client):
    """set_query_data accepts values and updater functions"""
    client.set_query_data(["todos"], ["a"])
    client.set_query_data(["todos"], lambda old: [*old, "b"])

    assert client.get_query_data(["todos"]) == ["a", "b"]
    assert client.get_query_data(["unknown"]) is None


@pytest.mark.unit
@pytest.mark.query
def test_updater_returning_none_is_ignored(client):
    """An updater producing None leaves the cache untouched"""
    assert client.set_query_data(["nothing"], lambda old: None) is None
    assert client.get_query_cache().find({"query_key": ["nothing"]}) is None


@pytest.mark.unit
@pytest.mark.query
def test_set_query_data_with_timestamp(client):
    """updated_at overrides the write timestamp"""
    client.set_query_data(["stamped"], 1, updated_at=123.0)

    assert client.get_query_state(["stamped"]).data_updated_at == 123.0


@pytest.mark.unit
@pytest.mark.query
def test_get_and_set_queries_data(client):
    """Bulk data access goes through filters"""
    client.set_query_data(["todos", 1], "one")
    client.set_query_data(["todos", 2], "two")
    client.set_query_data(["users"], "u")

    updated = client.set_queries_data({"query_key": ["todos"]}, lambda old: old.upper())

    assert updated == [(["todos", 1], "ONE"), (["todos", 2], "TWO")]
    assert client.get_queries_data({"query_key": ["todos"]}) == [
        (["todos", 1], "ONE"),
        (["todos", 2], "TWO"),
    ]


@pytest.mark.unit
@pytest.mark.query
def test_defaults_are_layered(client):
    """Client defaults, key defaults and call options merge in that order"""
    client.set_default_options(DefaultOptions(queries=QueryOptions(stale_time=10, gc_time=20)))
    client.set_query_defaults(["todos"], {"stale_time": 30})
    client.set_query_defaults(["todos", "detail"], QueryOptions(retry=5))

    options = client.default_query_options({"query_key": ["todos", "detail", 1], "gc_time": 99})

    assert options.stale_time == 30
    assert options.gc_time == 99
    assert options.retry == 5
    assert options.query_hash == '["todos","detail",1]'
    assert options.refetch_on_reconnect is True
    assert client.get_query_defaults(["users"]).stale_time is None


@pytest.mark.unit
@pytest.mark.query
def test_always_network_mode_skips_reconnect_refetch(client):
    """Queries ignoring connectivity do not refetch on reconnect by default"""
    options = client.default_query_options({"query_key": ["x"], "network_mode": "always"})

    assert options.refetch_on_reconnect is False


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_invalidate_refetches_only_active_queries(client):
    """Invalidation marks all matches stale but refetches only active ones"""
    # Arrange
    active_fn = counter_fn()
    inactive_fn = counter_fn()
    await client.fetch_query({"query_key": ["todos", "inactive"], "query_fn": inactive_fn})
    observer = QueryObserver(client, {"query_key": ["todos", "active"], "query_fn": active_fn})
    observer.subscribe(Recorder())
    await wait_for(lambda: observer.get_current_result().is_success)

    # Act
    await client.invalidate_queries({"query_key": ["todos"]})

    # Assert
    assert active_fn.calls["n"] == 2
    assert inactive_fn.calls["n"] == 1
    assert client.get_query_state(["todos", "inactive"]).is_invalidated
    assert not client.get_query_state(["todos", "active"]).is_invalidated


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_invalidate_refetch_type(client):
    """refetch_type picks which invalidated queries are refetched"""
    query_fn = counter_fn()
    await client.fetch_query({"query_key": ["inactive"], "query_fn": query_fn})

    await client.invalidate_queries({"query_key": ["inactive"]}, refetch_type="none")
    assert query_fn.calls["n"] == 1

    await client.invalidate_queries({"query_key": ["inactive"]}, refetch_type="inactive")
    assert query_fn.calls["n"] == 2


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_refetch_queries_skips_disabled(client):
    """Disabled queries are left alone by bulk refetches"""
    query_fn = counter_fn()
    client.set_query_data(["disabled"], 0)
    observer = QueryObserver(
        client, {"query_key": ["disabled"], "query_fn": query_fn, "enabled": False}
    )
    observer.subscribe(Recorder())

    await client.refetch_queries()

    assert query_fn.calls["n"] == 0


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_refetch_queries_throw_on_error(client):
    """throw_on_error surfaces a failed refetch"""
    def query_fn(context):
        raise ValueError("refetch failed")

    client.set_query_data(["throwing"], 0)
    client.get_query_cache().find({"query_key": ["throwing"]}).set_options(
        QueryOptions(query_fn=query_fn, retry=False)
    )

    await client.refetch_queries()
    with pytest.raises(ValueError, match="refetch failed"):
        await client.refetch_queries(throw_on_error=True)


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_cancel_queries_reverts(client):
    """cancel_queries stops running fetches and restores the previous data"""
    release = asyncio.Event()

    async def query_fn(context):
        await release.wait()
        return "new"

    client.set_query_data(["cancel"], "old")
    query = client.get_query_cache().find({"query_key": ["cancel"]})
    task = query.fetch(QueryOptions(query_fn=query_fn))
    await flush()

    await client.cancel_queries({"query_key": ["cancel"]})

    assert await task == "old"
    assert client.get_query_state(["cancel"]).fetch_status == "idle"
    assert client.get_query_data(["cancel"]) == "old"


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_is_fetching_counts_running_fetches(client):
    """is_fetching counts queries whose fetch is in flight"""
    release = asyncio.Event()

    async def query_fn(context):
        await release.wait()
        return 1

    tasks = [
        asyncio.ensure_future(client.fetch_query({"query_key": ["f", i], "query_fn": query_fn}))
        for i in range(2)
    ]
    await flush()

    assert client.is_fetching() == 2
    assert client.is_fetching({"query_key": ["f", 0]}) == 1

    release.set()
    await asyncio.gather(*tasks)
    assert client.is_fetching() == 0


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_reset_queries_restores_initial_state_and_refetches_active(client):
    """reset_queries drops data to the initial state and refetches observed queries"""
    query_fn = counter_fn()
    observer = QueryObserver(client, {"query_key": ["resettable"], "query_fn": query_fn})
    observer.subscribe(Recorder())
    await wait_for(lambda: observer.get_current_result().is_success)
    client.set_query_data(["idle-reset"], "x")

    await client.reset_queries()

    assert client.get_query_data(["idle-reset"]) is None
    assert client.get_query_data(["resettable"]) == 2


@pytest.mark.unit
@pytest.mark.query
def test_remove_queries(client):
    """remove_queries deletes matching queries"""
    client.set_query_data(["a", 1], 1)
    client.set_query_data(["b"], 2)

    client.remove_queries({"query_key": ["a"]})

    assert client.get_query_data(["a", 1]) is None
    assert client.get_query_data(["b"]) == 2


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_mount_resumes_on_reconnect(client, online):
    """A mounted client refetches stale observed queries when connectivity returns"""
    query_fn = counter_fn()
    client.mount()
    client.mount()
    observer = QueryObserver(client, {"query_key": ["reconnect"], "query_fn": query_fn})
    observer.subscribe(Recorder())
    await wait_for(lambda: observer.get_current_result().is_success)
    await flush()

    online.set_online(False)
    online.set_online(True)

    await wait_for(lambda: query_fn.calls["n"] == 2)
    client.unmount()
    assert online.has_listeners()
    client.unmount()
    assert not online.has_listeners()


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_offline_fetch_pauses_until_reconnect(client, online):
    """Fetches started offline wait in the paused status"""
    query_fn = counter_fn()
    client.mount()
    online.set_online(False)
    observer = QueryObserver(client, {"query_key": ["offline"], "query_fn": query_fn})
    observer.subscribe(Recorder())
    await flush()

    assert observer.get_current_result().fetch_status == "paused"
    assert observer.get_current_result().is_paused
    assert query_fn.calls["n"] == 0

    online.set_online(True)

    await wait_for(lambda: observer.get_current_result().is_success)
    assert query_fn.calls["n"] == 1
    client.unmount()


@pytest.mark.unit
@pytest.mark.query
def test_clients_default_to_module_managers():
    """Without explicit managers the module-level services are used"""
    from quarry import focus_manager, online_manager

    client = QueryClient()

    assert client.focus_manager is focus_manager
    assert client.online_manager is online_manager


@pytest.mark.unit
@pytest.mark.query
def test_injected_empty_caches_are_kept(focus, online):
    """Caches passed to the client are used even while they are empty"""
    query_cache = QueryCache()
    mutation_cache = MutationCache()

    client = QueryClient(
        query_cache=query_cache,
        mutation_cache=mutation_cache,
        focus_manager=focus,
        online_manager=online,
    )

    assert client.get_query_cache() is query_cache
    assert client.get_mutation_cache() is mutation_cache


@pytest.mark.unit
@pytest.mark.retry
@pytest.mark.asyncio
async def test_observer_retries_after_fetch_query_built_the_query(client):
    """Options of the fetch_query that built a query do not leak into observers"""
    # Arrange
    calls = []

    async def query_fn(context):
        calls.append(True)
        if len(calls) == 2:
            raise ConnectionError("flaky")
        return len(calls)

    await client.prefetch_query({"query_key": ["leak"], "query_fn": query_fn})
    observer = QueryObserver(
        client, {"query_key": ["leak"], "query_fn": query_fn, "retry_delay": 0.001}
    )
    recorder = Recorder()

    # Act
    observer.subscribe(recorder)
    await wait_for(lambda: recorder.last is not None and recorder.last.data == 3)

    # Assert
    assert len(calls) == 3
    assert recorder.last.is_success
    assert observer.get_current_query().options.retry is None


@pytest.mark.unit
@pytest.mark.query
@pytest.mark.asyncio
async def test_caller_timeout_leaves_shared_fetch_running(client):
    """A caller giving up on fetch_query does not cancel the fetch for everyone else"""
    # Arrange
    async def slow_fn(context):
        await asyncio.sleep(0.1)
        return "slow"

    async def fast_fn(context):
        return "fast"

    # Act
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(
            client.fetch_query({"query_key": ["shared"], "query_fn": slow_fn}), 0.02
        )

    # Assert
    assert client.get_query_state(["shared"]).fetch_status == "fetching"
    joined = await client.fetch_query({"query_key": ["shared"], "query_fn": fast_fn})
    assert joined == "slow"
    assert client.get_query_state(["shared"]).fetch_status == "idle"
