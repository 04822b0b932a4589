"""
Index Lifecycle Manager Tests

Creation, idempotency, waiting, failure and update handling of the managed
vector index, against the in-memory store double.
"""

import asyncio
import logging

import pytest

from doc_search_server.core.errors import IndexBuildFailed, IndexTimeout
from doc_search_server.search.index_manager import IndexManager
from doc_search_server.search.models import IndexStatus

from conftest import InMemoryDocumentStore


def make_manager(store, max_wait=0.5):
    return IndexManager(store, poll_interval=0.001, max_wait=max_wait)


@pytest.mark.asyncio
async def test_ensure_index_creates_and_waits_until_ready(descriptor):
    store = InMemoryDocumentStore(polls_until_ready=3)
    manager = make_manager(store)

    status = await manager.ensure_index(descriptor)

    assert status is IndexStatus.READY
    assert store.create_calls == 1
    assert manager.is_queryable(descriptor.name)


@pytest.mark.asyncio
async def test_ensure_index_twice_creates_once(descriptor):
    store = InMemoryDocumentStore(polls_until_ready=1)
    manager = make_manager(store)

    assert await manager.ensure_index(descriptor) is IndexStatus.READY
    assert await manager.ensure_index(descriptor) is IndexStatus.READY

    assert store.create_calls == 1
    assert store.update_calls == 0


@pytest.mark.asyncio
async def test_concurrent_ensure_index_creates_once(descriptor):
    store = InMemoryDocumentStore(polls_until_ready=2)
    manager = make_manager(store)

    results = await asyncio.gather(
        *(manager.ensure_index(descriptor) for _ in range(5))
    )

    assert all(r is IndexStatus.READY for r in results)
    assert store.create_calls == 1


@pytest.mark.asyncio
async def test_existing_ready_index_returns_immediately(descriptor):
    store = InMemoryDocumentStore()
    store.seed_index(descriptor, IndexStatus.READY)
    manager = make_manager(store)

    assert await manager.ensure_index(descriptor) is IndexStatus.READY
    assert store.create_calls == 0


@pytest.mark.asyncio
async def test_wait_times_out(descriptor):
    store = InMemoryDocumentStore(polls_until_ready=10_000)
    manager = make_manager(store, max_wait=0.02)

    with pytest.raises(IndexTimeout):
        await manager.ensure_index(descriptor)

    assert manager.known_status(descriptor.name) is IndexStatus.BUILDING


@pytest.mark.asyncio
async def test_failed_build_raises(descriptor):
    store = InMemoryDocumentStore(polls_until_ready=1, build_fails=True)
    manager = make_manager(store)

    with pytest.raises(IndexBuildFailed):
        await manager.ensure_index(descriptor)

    assert manager.known_status(descriptor.name) is IndexStatus.FAILED


@pytest.mark.asyncio
async def test_existing_failed_index_raises(descriptor):
    store = InMemoryDocumentStore()
    store.seed_index(descriptor, IndexStatus.FAILED)
    manager = make_manager(store)

    with pytest.raises(IndexBuildFailed):
        await manager.ensure_index(descriptor)


@pytest.mark.asyncio
async def test_changed_definition_is_updated(descriptor):
    store = InMemoryDocumentStore()
    store.seed_index(descriptor, IndexStatus.READY, definition={"filter_paths": []})
    manager = make_manager(store)

    assert await manager.ensure_index(descriptor) is IndexStatus.READY
    assert store.update_calls == 1
    assert store.indexes[descriptor.name].definition == descriptor.definition()


@pytest.mark.asyncio
async def test_failed_update_is_logged_and_not_fatal(descriptor, caplog):
    store = InMemoryDocumentStore()
    store.seed_index(descriptor, IndexStatus.READY, definition={"filter_paths": []})
    store.update_error = RuntimeError("permission denied")
    manager = make_manager(store)

    with caplog.at_level(logging.WARNING, logger="docsearch.index"):
        status = await manager.ensure_index(descriptor)

    assert status is IndexStatus.READY
    assert store.update_calls == 1
    assert "permission denied" in caplog.text


@pytest.mark.asyncio
async def test_status_refreshes_view(descriptor):
    store = InMemoryDocumentStore()
    manager = make_manager(store)

    assert await manager.status(descriptor.name) is IndexStatus.ABSENT

    store.seed_index(descriptor, IndexStatus.READY)
    assert not manager.is_queryable(descriptor.name)
    assert await manager.status(descriptor.name) is IndexStatus.READY
    assert manager.is_queryable(descriptor.name)

    described = await manager.describe(descriptor)
    assert described.queryable


@pytest.mark.asyncio
async def test_drop_index_resets_status(descriptor):
    store = InMemoryDocumentStore()
    store.seed_index(descriptor, IndexStatus.READY)
    manager = make_manager(store)
    await manager.list_indexes()

    await manager.drop_index(descriptor.name)

    assert manager.known_status(descriptor.name) is IndexStatus.ABSENT
    assert descriptor.name not in store.indexes
