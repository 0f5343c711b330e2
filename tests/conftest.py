"""Shared test utilities and fixtures for agent-chat tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import pytest

from agent_chat.core.settings import Settings
from agent_chat.schemas.messages import Message, RunStatus

_FINISHED = object()


class ScriptedStream:
    """Async event iterator fed by the test, so pushes can interleave with assertions."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self.delivered = 0
        self.closed = False

    def push(self, *events: object) -> None:
        for event in events:
            self._queue.put_nowait(event)

    def fail(self, error: BaseException) -> None:
        self._queue.put_nowait(error)

    def finish(self) -> None:
        self._queue.put_nowait(_FINISHED)

    def __aiter__(self) -> ScriptedStream:
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _FINISHED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        self.delivered += 1
        return item

    async def aclose(self) -> None:
        self.closed = True


class FakeTransport:
    """In-memory agent transport recording every call made at the service boundary."""

    def __init__(self) -> None:
        self.thread_ids: list[str] = []
        self.create_gate: asyncio.Event | None = None
        self.create_error: Exception | None = None
        self.created_metadata: list[dict[str, Any]] = []
        self.streams: list[ScriptedStream] = []
        self.stream_calls: list[tuple[str | None, list[dict[str, Any]]]] = []
        self.cancelled: list[tuple[str, str]] = []
        self.deleted: list[str] = []
        self.renamed: list[tuple[str, str]] = []
        self.batch_deleted: list[list[str]] = []
        self.runs: list[tuple[str, list[dict[str, Any]]]] = []
        self.run_statuses: list[RunStatus] = []
        self.status_checks = 0
        self.thread_messages: dict[str, list[dict[str, Any]]] = {}
        self.closed = False

    def script_stream(self) -> ScriptedStream:
        stream = ScriptedStream()
        self.streams.append(stream)
        return stream

    async def create_thread(self, metadata: Mapping[str, Any] | None = None) -> dict[str, str]:
        self.created_metadata.append(dict(metadata or {}))
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_error is not None:
            raise self.create_error
        if self.thread_ids:
            return {"id": self.thread_ids.pop(0)}
        return {"id": f"thread-{len(self.created_metadata)}"}

    def open_stream(self, thread_id: str | None, *, messages: Sequence[Mapping[str, Any]]) -> ScriptedStream:
        self.stream_calls.append((thread_id, [dict(message) for message in messages]))
        if self.streams:
            return self.streams.pop(0)
        stream = ScriptedStream()
        stream.finish()
        return stream

    async def cancel_stream(self, thread_id: str, run_id: str) -> None:
        self.cancelled.append((thread_id, run_id))

    async def delete_thread(self, thread_id: str) -> None:
        self.deleted.append(thread_id)

    async def rename_thread(self, thread_id: str, title: str) -> None:
        self.renamed.append((thread_id, title))

    async def batch_delete_threads(self, thread_ids: Sequence[str]) -> None:
        self.batch_deleted.append(list(thread_ids))

    async def create_run(self, thread_id: str, *, messages: Sequence[Mapping[str, Any]]) -> str:
        self.runs.append((thread_id, [dict(message) for message in messages]))
        return f"run-{len(self.runs)}"

    async def get_run_status(self, thread_id: str, run_id: str) -> RunStatus:
        self.status_checks += 1
        if len(self.run_statuses) > 1:
            return self.run_statuses.pop(0)
        if self.run_statuses:
            return self.run_statuses[0]
        return RunStatus(status="pending")

    async def get_thread_messages(self, thread_id: str) -> list[dict[str, Any]]:
        return list(self.thread_messages.get(thread_id, []))

    async def health_check(self) -> bool:
        return True

    async def aclose(self) -> None:
        self.closed = True


class FakeMessageStore:
    """Message store fake that can be told to fail, for best-effort persistence checks."""

    def __init__(self) -> None:
        self.threads: dict[str, dict[str, Message]] = {}
        self.fail_writes = False
        self.deleted: list[str] = []

    async def persist_message(self, thread_id: str, message: Message) -> None:
        if self.fail_writes:
            raise RuntimeError("store unavailable")
        self.threads.setdefault(thread_id, {})[message.id] = message

    async def load_messages(self, thread_id: str) -> list[Message]:
        return sorted(self.threads.get(thread_id, {}).values(), key=lambda message: message.timestamp)

    async def delete_thread(self, thread_id: str) -> None:
        self.deleted.append(thread_id)
        self.threads.pop(thread_id, None)

    async def close(self) -> None:
        return None


class FakeRedisClient:
    """Small async fake matching the Redis hash methods used by RedisMessageStore."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.deleted_keys: list[str] = []
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def hset(self, key: str, field: str, value: str) -> int:
        is_new = field not in self.hashes.setdefault(key, {})
        self.hashes[key][field] = value
        return int(is_new)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def delete(self, key: str) -> int:
        self.deleted_keys.append(key)
        return int(self.hashes.pop(key, None) is not None)

    async def aclose(self) -> None:
        self.closed = True


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)


def fragment_event(message_id: str, text: str, *, final: bool = False, **extra: Any) -> dict[str, Any]:
    return {
        "kind": "fragment",
        "data": {"id": message_id, "type": "AIMessageChunk", "content": text},
        "final": final,
        **extra,
    }


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "APP_ENV": "test",
        "AGENT_CHAT_ENDPOINT_URL": "http://agent.test",
        "AGENT_CHAT_AGENT_ID": "agent",
        "AGENT_CHAT_REQUEST_TIMEOUT_MS": 1000,
        "AGENT_CHAT_POLL_INTERVAL_MS": 1,
        "AGENT_CHAT_POLL_TIMEOUT_MS": 1000,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def fake_store() -> FakeMessageStore:
    return FakeMessageStore()


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()
