"""
Integration tests for mutations working together with queries: optimistic
updates with rollback and invalidation after writes.
"""

import asyncio

import pytest

from quarry import MutationObserver, QueryObserver

from tests.utils import Recorder, wait_for


@pytest.mark.integration
@pytest.mark.mutation
@pytest.mark.asyncio
async def test_optimistic_update_rolls_back_on_error(client):
    """on_mutate writes optimistically; on_error restores the snapshot"""
    # Arrange
    client.set_query_data(["todos"], ["a"])

    async def on_mutate(title):
        await client.cancel_queries({"query_key": ["todos"]})
        previous = client.get_query_data(["todos"])
        client.set_query_data(["todos"], lambda old: [*old, title])
        return {"previous": previous}

    def on_error(error, title, context):
        client.set_query_data(["todos"], context["previous"])

    async def add_todo(title):
        await asyncio.sleep(0.01)
        raise RuntimeError("server rejected")

    observer = MutationObserver(
        client, {"mutation_fn": add_todo, "on_mutate": on_mutate, "on_error": on_error}
    )
    seen = []
    client.get_query_cache().subscribe(
        lambda event: seen.append(client.get_query_data(["todos"]))
    )

    # Act
    with pytest.raises(RuntimeError):
        await observer.mutate("b")

    # Assert - the optimistic value was visible, then rolled back
    assert ["a", "b"] in seen
    assert client.get_query_data(["todos"]) == ["a"]


@pytest.mark.integration
@pytest.mark.mutation
@pytest.mark.asyncio
async def test_invalidate_after_mutation_refetches_observed_query(client):
    """Invalidating in on_success refreshes observers of the written data"""
    server = {"todos": ["a"]}

    async def load_todos(context):
        return list(server["todos"])

    async def add_todo(title):
        server["todos"].append(title)
        return title

    async def on_success(data, title, context):
        await client.invalidate_queries({"query_key": ["todos"]})

    query_observer = QueryObserver(client, {"query_key": ["todos"], "query_fn": load_todos})
    query_observer.subscribe(Recorder())
    await wait_for(lambda: query_observer.get_current_result().is_success)

    mutation_observer = MutationObserver(
        client, {"mutation_fn": add_todo, "on_success": on_success}
    )
    await mutation_observer.mutate("b")

    assert query_observer.get_current_result().data == ["a", "b"]
