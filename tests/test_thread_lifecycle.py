"""Unit tests for thread creation, stream-reported ids and resets."""

from __future__ import annotations

import asyncio

import pytest

from agent_chat.core.errors import NetworkError, SessionCancelledError
from agent_chat.services.credentials import StaticCredentials
from agent_chat.services.thread_lifecycle import ThreadLifecycleManager, ThreadOrigin, ThreadState

from tests.conftest import FakeTransport, wait_until


@pytest.mark.asyncio
async def test_ensure_creates_thread_once_with_user_metadata(fake_transport: FakeTransport) -> None:
    fake_transport.thread_ids = ["thread-a"]
    manager = ThreadLifecycleManager(fake_transport, credentials=StaticCredentials(user_id="user-1"))

    assert manager.state is ThreadState.UNINITIALIZED
    assert await manager.ensure() == "thread-a"
    assert await manager.ensure() == "thread-a"

    assert manager.handle.created_via is ThreadOrigin.EXPLICIT
    assert manager.state is ThreadState.READY
    assert len(fake_transport.created_metadata) == 1
    assert fake_transport.created_metadata[0]["user_id"] == "user-1"
    assert "created_at" in fake_transport.created_metadata[0]


@pytest.mark.asyncio
async def test_concurrent_ensure_calls_share_one_creation(fake_transport: FakeTransport) -> None:
    fake_transport.create_gate = asyncio.Event()
    fake_transport.thread_ids = ["thread-a"]
    manager = ThreadLifecycleManager(fake_transport)

    first = asyncio.create_task(manager.ensure())
    second = asyncio.create_task(manager.ensure())
    await wait_until(lambda: manager.state is ThreadState.CREATING and len(fake_transport.created_metadata) == 1)
    fake_transport.create_gate.set()

    assert await asyncio.gather(first, second) == ["thread-a", "thread-a"]
    assert len(fake_transport.created_metadata) == 1


@pytest.mark.asyncio
async def test_explicit_creation_wins_over_id_reported_while_creating(fake_transport: FakeTransport) -> None:
    fake_transport.create_gate = asyncio.Event()
    fake_transport.thread_ids = ["Y"]
    manager = ThreadLifecycleManager(fake_transport)

    pending = asyncio.create_task(manager.ensure())
    await wait_until(lambda: len(fake_transport.created_metadata) == 1)

    assert manager.accept_reported_id("X") is False
    fake_transport.create_gate.set()

    assert await pending == "Y"
    assert manager.thread_id == "Y"
    assert manager.handle.created_via is ThreadOrigin.EXPLICIT


@pytest.mark.asyncio
async def test_reported_id_is_adopted_only_when_uninitialized(fake_transport: FakeTransport) -> None:
    manager = ThreadLifecycleManager(fake_transport, auto_create=False)

    assert manager.accept_reported_id("server-1") is True
    assert manager.handle.created_via is ThreadOrigin.STREAM_REPORTED
    assert manager.accept_reported_id("server-1") is True
    assert manager.accept_reported_id("server-2") is False
    assert manager.thread_id == "server-1"

    manager.switch_to("chosen")
    assert manager.accept_reported_id("server-1") is False
    assert manager.thread_id == "chosen"


@pytest.mark.asyncio
async def test_reported_id_from_stale_generation_is_discarded(fake_transport: FakeTransport) -> None:
    manager = ThreadLifecycleManager(fake_transport, auto_create=False)
    stale_generation = manager.generation

    manager.reset()

    assert manager.accept_reported_id("old-thread", generation=stale_generation) is False
    assert manager.state is ThreadState.UNINITIALIZED


@pytest.mark.asyncio
async def test_failed_creation_returns_to_uninitialized_and_can_be_retried(fake_transport: FakeTransport) -> None:
    fake_transport.create_error = NetworkError("connection refused", status_code=502)
    manager = ThreadLifecycleManager(fake_transport)

    with pytest.raises(NetworkError):
        await manager.ensure()
    assert manager.state is ThreadState.UNINITIALIZED

    fake_transport.create_error = None
    fake_transport.thread_ids = ["thread-b"]
    assert await manager.ensure() == "thread-b"


@pytest.mark.asyncio
async def test_creation_finishing_after_reset_is_discarded(fake_transport: FakeTransport) -> None:
    fake_transport.create_gate = asyncio.Event()
    fake_transport.thread_ids = ["stale"]
    manager = ThreadLifecycleManager(fake_transport)

    pending = asyncio.create_task(manager.ensure())
    await wait_until(lambda: len(fake_transport.created_metadata) == 1)
    manager.switch_to("chosen")
    fake_transport.create_gate.set()

    with pytest.raises(SessionCancelledError):
        await pending
    assert manager.thread_id == "chosen"


@pytest.mark.asyncio
async def test_deleting_active_thread_creates_replacement_when_auto_creating(fake_transport: FakeTransport) -> None:
    fake_transport.thread_ids = ["first", "second"]
    manager = ThreadLifecycleManager(fake_transport)
    await manager.ensure()

    assert await manager.delete("first") == "second"
    assert fake_transport.deleted == ["first"]
    assert manager.thread_id == "second"


@pytest.mark.asyncio
async def test_deleting_active_thread_without_auto_create_leaves_no_thread(fake_transport: FakeTransport) -> None:
    manager = ThreadLifecycleManager(fake_transport, auto_create=False)
    manager.switch_to("only")

    assert await manager.delete("only") is None
    assert manager.state is ThreadState.UNINITIALIZED
    assert manager.thread_id is None
    assert fake_transport.created_metadata == []


@pytest.mark.asyncio
async def test_deferred_replacement_clears_active_thread_first(fake_transport: FakeTransport) -> None:
    fake_transport.thread_ids = ["first", "second"]
    manager = ThreadLifecycleManager(fake_transport)
    await manager.ensure()
    generation = manager.generation

    assert await manager.delete("first", replace=False) is None
    assert manager.state is ThreadState.UNINITIALIZED
    assert manager.generation > generation
    assert len(fake_transport.created_metadata) == 1

    assert await manager.replace_active() == "second"
    assert manager.thread_id == "second"


@pytest.mark.asyncio
async def test_deleting_other_threads_keeps_active_thread(fake_transport: FakeTransport) -> None:
    manager = ThreadLifecycleManager(fake_transport)
    manager.switch_to("active")

    assert await manager.delete("other") == "active"
    assert await manager.delete_many(["x", "y"]) == "active"
    await manager.rename("active", "Trip planning")

    assert fake_transport.batch_deleted == [["x", "y"]]
    assert fake_transport.renamed == [("active", "Trip planning")]


@pytest.mark.asyncio
async def test_create_new_replaces_ready_thread(fake_transport: FakeTransport) -> None:
    fake_transport.thread_ids = ["one", "two"]
    manager = ThreadLifecycleManager(fake_transport)
    await manager.ensure()
    generation = manager.generation

    assert await manager.create_new() == "two"
    assert manager.generation == generation + 1
