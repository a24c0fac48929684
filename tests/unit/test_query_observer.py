"""
Tests for QueryObserver: derived results, selective notification, options
and timers.
"""

import asyncio

import pytest

from quarry import FetchOptions, QueryObserver, keep_previous_data

from tests.utils import Recorder, flush, wait_for

INF = float("inf")


def counter_fn():
    calls = {"n": 0}

    async def query_fn(context):
        calls["n"] += 1
        return calls["n"]

    query_fn.calls = calls
    return query_fn


@pytest.mark.unit
@pytest.mark.observer
def test_unsubscribed_observer_reports_pending(client):
    """Before subscribing nothing is fetched"""
    observer = QueryObserver(client, {"query_key": ["idle"], "query_fn": counter_fn()})

    result = observer.get_current_result()

    assert result.status == "pending"
    assert result.fetch_status == "idle"
    assert result.is_pending
    assert not result.is_fetching
    assert result.data is None


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_subscribe_fetches_and_delivers_results(client):
    """Subscribing starts the fetch; listeners see loading then success"""
    # Arrange
    query_fn = counter_fn()
    observer = QueryObserver(client, {"query_key": ["load"], "query_fn": query_fn})
    recorder = Recorder()

    # Act
    observer.subscribe(recorder)
    await wait_for(lambda: recorder.last is not None and recorder.last.is_success)

    # Assert
    assert recorder.calls[0].is_loading
    assert recorder.calls[0].is_fetching
    final = recorder.last
    assert final.data == 1
    assert final.is_fetched
    assert final.is_fetched_after_mount
    assert final.is_stale
    assert query_fn.calls["n"] == 1


@pytest.mark.unit
@pytest.mark.observer
def test_optimistic_result_predicts_fetch(client):
    """get_optimistic_result shows the fetch subscribing would start"""
    observer = QueryObserver(client, {"query_key": ["optimistic"], "query_fn": counter_fn()})

    result = observer.get_optimistic_result({"query_key": ["optimistic"], "query_fn": counter_fn()})

    assert result.fetch_status == "fetching"
    assert result.is_loading


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_fresh_data_is_not_refetched_on_mount(client):
    """Data within stale_time is served from the cache"""
    client.set_query_data(["fresh"], "cached")
    query_fn = counter_fn()
    observer = QueryObserver(
        client, {"query_key": ["fresh"], "query_fn": query_fn, "stale_time": 60}
    )

    observer.subscribe(Recorder())
    await flush()

    assert query_fn.calls["n"] == 0
    assert observer.get_current_result().data == "cached"
    assert not observer.get_current_result().is_stale


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_refetch_on_mount_always(client):
    """refetch_on_mount='always' refetches even fresh data"""
    client.set_query_data(["always"], 0)
    query_fn = counter_fn()
    observer = QueryObserver(
        client,
        {"query_key": ["always"], "query_fn": query_fn, "stale_time": 60, "refetch_on_mount": "always"},
    )

    observer.subscribe(Recorder())
    await wait_for(lambda: query_fn.calls["n"] == 1)


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_disabled_observer_does_not_fetch(client):
    """enabled=False keeps the observer idle until refetched by hand"""
    query_fn = counter_fn()
    observer = QueryObserver(
        client, {"query_key": ["disabled"], "query_fn": query_fn, "enabled": False}
    )
    observer.subscribe(Recorder())
    await flush()

    assert query_fn.calls["n"] == 0
    assert not observer.get_current_result().is_enabled

    result = await observer.refetch()

    assert result.data == 1


@pytest.mark.unit
@pytest.mark.observer
def test_invalid_enabled_is_rejected(client):
    """enabled must be a bool or a callable"""
    with pytest.raises(TypeError, match="enabled"):
        QueryObserver(client, {"query_key": ["bad"], "enabled": "yes"})


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_enabling_later_triggers_fetch(client):
    """Switching enabled on for a mounted observer fetches"""
    query_fn = counter_fn()
    options = {"query_key": ["toggle"], "query_fn": query_fn, "enabled": False}
    observer = QueryObserver(client, options)
    observer.subscribe(Recorder())

    observer.set_options({**options, "enabled": True})

    await wait_for(lambda: observer.get_current_result().is_success)
    assert query_fn.calls["n"] == 1


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_select_transforms_and_is_memoized(client):
    """select derives data and is not rerun for unchanged data"""
    selects = []

    def select(data):
        selects.append(data)
        return [item.upper() for item in data]

    client.set_query_data(["selected"], ["a", "b"])
    observer = QueryObserver(
        client, {"query_key": ["selected"], "select": select, "stale_time": INF}
    )
    observer.subscribe(Recorder())
    first = observer.get_current_result().data
    observer.update_result()

    assert first == ["A", "B"]
    assert observer.get_current_result().data is first
    assert len(selects) == 1


@pytest.mark.unit
@pytest.mark.observer
def test_select_errors_surface_as_result_errors(client):
    """An exception in select turns the result into an error"""
    def select(data):
        raise ValueError("bad select")

    client.set_query_data(["select-error"], 1)
    observer = QueryObserver(
        client, {"query_key": ["select-error"], "select": select, "stale_time": INF}
    )

    result = observer.get_current_result()

    assert result.status == "error"
    assert str(result.error) == "bad select"


@pytest.mark.unit
@pytest.mark.observer
def test_placeholder_data(client):
    """placeholder_data shows as success without touching the cache"""
    observer = QueryObserver(
        client, {"query_key": ["placeholder"], "query_fn": counter_fn(), "placeholder_data": "soon"}
    )

    result = observer.get_current_result()

    assert result.status == "success"
    assert result.data == "soon"
    assert result.is_placeholder_data
    assert client.get_query_data(["placeholder"]) is None


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_keep_previous_data_across_keys(client):
    """keep_previous_data shows the last key's data while the new key loads"""
    release = asyncio.Event()

    async def query_fn(context):
        if context.query_key[1] == 2:
            await release.wait()
        return f"page {context.query_key[1]}"

    options = {"query_fn": query_fn, "placeholder_data": keep_previous_data}
    observer = QueryObserver(client, {**options, "query_key": ["page", 1]})
    observer.subscribe(Recorder())
    await wait_for(lambda: observer.get_current_result().is_success)

    observer.set_options({**options, "query_key": ["page", 2]})
    result = observer.get_current_result()

    assert result.data == "page 1"
    assert result.is_placeholder_data
    assert result.is_fetching

    release.set()
    await wait_for(lambda: observer.get_current_result().data == "page 2")
    assert not observer.get_current_result().is_placeholder_data


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.notify
@pytest.mark.asyncio
async def test_notify_on_change_props_filters_deliveries(client):
    """Only changes to the listed fields are delivered"""
    # Arrange
    client.set_query_data(["props"], "a")
    observer = QueryObserver(
        client,
        {"query_key": ["props"], "stale_time": INF, "notify_on_change_props": ["data"]},
    )
    recorder = Recorder()
    observer.subscribe(recorder)

    # Act - invalidating changes is_stale but not data
    client.get_query_cache().find({"query_key": ["props"]}).invalidate()
    await flush()

    # Assert
    assert len(recorder) == 0

    client.set_query_data(["props"], "b")
    await flush()
    assert [result.data for result in recorder.calls] == ["b"]


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.notify
@pytest.mark.asyncio
async def test_tracked_props_filter_deliveries(client):
    """Reading through track_result narrows notifications to the fields read"""
    client.set_query_data(["tracked"], "a")
    observer = QueryObserver(client, {"query_key": ["tracked"], "stale_time": INF})
    recorder = Recorder()
    observer.subscribe(recorder)

    tracked = observer.track_result(observer.get_current_result())
    assert tracked.data == "a"

    client.get_query_cache().find({"query_key": ["tracked"]}).invalidate()
    await flush()
    assert len(recorder) == 0

    client.set_query_data(["tracked"], "b")
    await flush()
    assert recorder.last.data == "b"


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_throw_on_error(client):
    """get_current_result raises the error when throw_on_error applies"""
    def query_fn(context):
        raise KeyError("missing")

    observer = QueryObserver(
        client,
        {"query_key": ["throws"], "query_fn": query_fn, "retry": False, "throw_on_error": True},
    )
    observer.subscribe(Recorder())
    await wait_for(lambda: observer.current_result.is_error)

    with pytest.raises(KeyError):
        observer.get_current_result()


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_refetch_supersedes_and_returns_result(client):
    """refetch cancels a running fetch by default and returns the new result"""
    query_fn = counter_fn()
    client.set_query_data(["refetch"], 0)
    observer = QueryObserver(
        client, {"query_key": ["refetch"], "query_fn": query_fn, "stale_time": INF}
    )
    observer.subscribe(Recorder())

    result = await observer.refetch()

    assert result.data == 1
    assert result.is_success


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_fetch_optimistic(client):
    """fetch_optimistic fetches without subscribing"""
    observer = QueryObserver(client, {"query_key": ["opt"], "query_fn": counter_fn()})

    result = await observer.fetch_optimistic({"query_key": ["opt"], "query_fn": counter_fn()})

    assert result.data == 1
    assert not observer.has_listeners()


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_stale_timer_flips_is_stale(client):
    """The stale timeout recomputes the result once stale_time passes"""
    client.set_query_data(["timed"], "value")
    observer = QueryObserver(client, {"query_key": ["timed"], "stale_time": 0.02})
    recorder = Recorder()
    observer.subscribe(recorder)
    assert not observer.get_current_result().is_stale

    await wait_for(lambda: recorder.last is not None and recorder.last.is_stale)


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_refetch_interval_polls(client):
    """refetch_interval refetches while subscribed and stops after unsubscribe"""
    query_fn = counter_fn()
    observer = QueryObserver(
        client, {"query_key": ["poll"], "query_fn": query_fn, "refetch_interval": 0.01}
    )
    unsubscribe = observer.subscribe(Recorder())

    await wait_for(lambda: query_fn.calls["n"] >= 3)
    unsubscribe()
    calls = query_fn.calls["n"]
    await asyncio.sleep(0.05)

    assert query_fn.calls["n"] == calls


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_refetch_interval_pauses_in_background(client, focus):
    """Unfocused processes skip interval refetches unless told otherwise"""
    query_fn = counter_fn()
    client.set_query_data(["background"], 0)
    focus.set_focused(False)
    observer = QueryObserver(
        client,
        {
            "query_key": ["background"],
            "query_fn": query_fn,
            "stale_time": INF,
            "refetch_interval": 0.01,
        },
    )
    observer.subscribe(Recorder())

    await asyncio.sleep(0.05)

    assert query_fn.calls["n"] == 0


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_focus_refetches_stale_queries(client, focus):
    """Regaining focus refetches stale observed queries of a mounted client"""
    query_fn = counter_fn()
    client.mount()
    observer = QueryObserver(client, {"query_key": ["focus"], "query_fn": query_fn})
    observer.subscribe(Recorder())
    await wait_for(lambda: query_fn.calls["n"] == 1)
    await flush()

    focus.set_focused(False)
    focus.set_focused(True)

    await wait_for(lambda: query_fn.calls["n"] == 2)
    client.unmount()


@pytest.mark.unit
@pytest.mark.observer
@pytest.mark.asyncio
async def test_execute_fetch_joins_running_fetch(client):
    """Explicit fetches without cancel_refetch join the running one"""
    release = asyncio.Event()
    calls = []

    async def query_fn(context):
        calls.append(True)
        await release.wait()
        return "done"

    observer = QueryObserver(client, {"query_key": ["join"], "query_fn": query_fn})
    observer.subscribe(Recorder())
    await flush()

    task = observer.execute_fetch(FetchOptions(cancel_refetch=False))
    release.set()

    assert await task == "done"
    assert len(calls) == 1
