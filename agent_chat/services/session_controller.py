from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Coroutine, Mapping, Sequence
from dataclasses import dataclass, field
import logging
import time
from typing import Any

from agent_chat.core.errors import NetworkError, RunError, SessionCancelledError, SessionError, StreamTimeoutError
from agent_chat.core.settings import Settings
from agent_chat.schemas.messages import Message
from agent_chat.services.chat_stream import WireEvent, encode_message
from agent_chat.services.contracts import AgentTransportProtocol, CredentialsProtocol, MessageStoreProtocol
from agent_chat.services.event_decoder import decode, normalize_role, synthesize_message_id
from agent_chat.services.fragment_buffer import FragmentBuffer
from agent_chat.services.thread_lifecycle import ThreadHandle, ThreadLifecycleManager, ThreadState

logger = logging.getLogger(__name__)

_END = object()

MessagesObserver = Callable[[tuple[Message, ...]], None]
TokenObserver = Callable[[Message], None]
ErrorObserver = Callable[[SessionError], None]


@dataclass
class StreamHandle:
    """The one in-flight submission of a session."""

    thread_id: str | None
    generation: int
    cancel_token: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.monotonic)
    run_id: str | None = None
    task: asyncio.Task[None] | None = None
    touched: list[str] = field(default_factory=list)
    pending_persist: list[Message] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_set()


@dataclass
class _FailedTurn:
    human: Message
    partial_ids: list[str]


class SessionController:
    """Runs one conversation: thread resolution, streaming, cancellation and retry.

    ``submit`` appends the human message synchronously and returns the task
    consuming the reply. Progress is observed through ``on_update`` (full
    snapshot), ``on_token`` (still-incomplete message updates) and
    ``on_error``. At most one reply streams at a time.
    """

    def __init__(
        self,
        *,
        transport: AgentTransportProtocol,
        settings: Settings,
        credentials: CredentialsProtocol | None = None,
        message_store: MessageStoreProtocol | None = None,
        on_update: MessagesObserver | None = None,
        on_token: TokenObserver | None = None,
        on_error: ErrorObserver | None = None,
    ) -> None:
        settings.require_endpoint()
        self._transport = transport
        self._settings = settings
        self._store = message_store
        self._threads = ThreadLifecycleManager(
            transport,
            auto_create=settings.auto_create_thread,
            credentials=credentials,
        )
        self._buffer = FragmentBuffer()
        self._on_update = on_update
        self._on_token = on_token
        self._on_error = on_error

        self._stream: StreamHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._error: SessionError | None = None
        self._failed_turn: _FailedTurn | None = None
        self._last_text: str | None = None

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(message.model_copy(deep=True) for message in self._buffer.get_all())

    @property
    def streaming(self) -> bool:
        return self._stream is not None

    @property
    def error(self) -> SessionError | None:
        return self._error

    @property
    def failed_message_id(self) -> str | None:
        return self._failed_turn.human.id if self._failed_turn is not None else None

    @property
    def thread_id(self) -> str | None:
        return self._threads.thread_id

    @property
    def thread_state(self) -> ThreadState:
        return self._threads.state

    @property
    def thread_handle(self) -> ThreadHandle:
        return self._threads.handle

    def submit(
        self,
        text: str,
        attachments: Sequence[Mapping[str, Any]] | None = None,
    ) -> asyncio.Task[None] | None:
        """Send a human message; returns the reply task, or ``None`` when rejected."""
        loop = asyncio.get_running_loop()
        content = text.strip()
        if not content and not attachments:
            return None
        if self._stream is not None:
            logger.warning("rejecting submission while a reply is streaming", extra={"thread_id": self.thread_id})
            return None

        metadata: dict[str, Any] = {}
        if attachments:
            metadata["attachments"] = [dict(attachment) for attachment in attachments]
        human = Message(id=synthesize_message_id(), role="human", content=content, is_complete=True, metadata=metadata)
        self._buffer.put(human)
        self._last_text = content
        return self._start(loop, human)

    def cancel(self) -> None:
        """Stop consuming the active reply; a no-op when nothing streams."""
        stream = self._stream
        if stream is None:
            return
        stream.cancel_token.set()
        self._stream = None
        logger.info("stream cancelled", extra={"thread_id": stream.thread_id, "run_id": stream.run_id})
        if stream.thread_id and stream.run_id:
            self._spawn(self._transport.cancel_stream(stream.thread_id, stream.run_id))
        self._publish()

    def retry(self) -> asyncio.Task[None] | None:
        """Re-run the failed turn, or resubmit the last text when nothing failed."""
        loop = asyncio.get_running_loop()
        if self._stream is not None:
            logger.warning("rejecting retry while a reply is streaming", extra={"thread_id": self.thread_id})
            return None

        failed = self._failed_turn
        if failed is not None and failed.human.id in self._buffer:
            for message_id in failed.partial_ids:
                self._buffer.discard(message_id)
            return self._start(loop, failed.human)
        if self._last_text:
            return self.submit(self._last_text)
        return None

    async def switch_thread(self, thread_id: str) -> None:
        await self._stop_stream()
        self._threads.switch_to(thread_id)
        self._reset_conversation()
        await self._load_history(thread_id)
        self._publish()

    async def new_thread(self) -> str:
        await self._stop_stream()
        self._reset_conversation()
        self._publish()
        return await self._threads.create_new()

    async def delete_thread(self, thread_id: str) -> str | None:
        """Delete a thread and return the active thread id afterwards."""
        is_active = thread_id == self._threads.handle.id
        if is_active:
            await self._stop_stream()
        active_id = await self._threads.delete(thread_id, replace=False)
        await self._forget(thread_id)
        if not is_active:
            return active_id
        self._reset_conversation()
        self._publish()
        return await self._threads.replace_active()

    async def delete_threads(self, thread_ids: Sequence[str]) -> str | None:
        is_active = self._threads.handle.id in thread_ids
        if is_active:
            await self._stop_stream()
        active_id = await self._threads.delete_many(thread_ids, replace=False)
        for thread_id in thread_ids:
            await self._forget(thread_id)
        if not is_active:
            return active_id
        self._reset_conversation()
        self._publish()
        return await self._threads.replace_active()

    async def rename_thread(self, thread_id: str, title: str) -> None:
        await self._threads.rename(thread_id, title)

    async def clear(self) -> None:
        await self._stop_stream()
        self._reset_conversation()
        self._publish()

    async def aclose(self) -> None:
        await self._stop_stream()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def _start(self, loop: asyncio.AbstractEventLoop, human: Message) -> asyncio.Task[None]:
        self._error = None
        self._failed_turn = None
        stream = StreamHandle(thread_id=self._threads.thread_id, generation=self._threads.generation)
        self._stream = stream
        self._publish()
        stream.task = self._spawn(self._run(stream, human), loop=loop)
        return stream.task

    async def _run(self, stream: StreamHandle, human: Message) -> None:
        try:
            thread_id = await self._resolve_thread(stream)
            await self._persist_when_known(stream, human)
            logger.info("stream started", extra={"thread_id": thread_id, "message_id": human.id})
            events = self._open_events(thread_id, human)
            await self._consume(stream, events)
            for message_id in stream.touched:
                message = self._buffer.mark_complete(message_id)
                if message is not None:
                    await self._persist_when_known(stream, message)
            logger.info(
                "stream finished",
                extra={"thread_id": stream.thread_id, "run_id": stream.run_id, "elapsed": time.monotonic() - stream.started_at},
            )
        except SessionCancelledError:
            logger.info("stream stopped", extra={"thread_id": stream.thread_id, "message_id": human.id})
        except SessionError as exc:
            self._fail(stream, human, exc)
        except Exception:
            logger.exception("assistant stream failed", extra={"thread_id": stream.thread_id})
            self._fail(stream, human, NetworkError("Assistant stream failed"))
        finally:
            if self._stream is stream:
                self._stream = None
                self._publish()

    async def _resolve_thread(self, stream: StreamHandle) -> str | None:
        threads = self._threads
        if threads.state is ThreadState.READY:
            thread_id = threads.thread_id
        elif threads.auto_create or threads.state is ThreadState.CREATING or not self._settings.use_streaming:
            thread_id = await threads.ensure()
        else:
            # the server creates the thread and reports its id on the first event
            thread_id = None

        if stream.cancelled or stream.generation != threads.generation:
            raise SessionCancelledError("thread selection changed before the stream opened")
        stream.thread_id = thread_id
        return thread_id

    def _open_events(self, thread_id: str | None, human: Message) -> AsyncIterator[WireEvent]:
        messages = [encode_message(human)]
        if self._settings.use_streaming:
            return self._transport.open_stream(thread_id, messages=messages)
        assert thread_id is not None
        return self._polled_events(thread_id, messages)

    async def _consume(self, stream: StreamHandle, events: AsyncIterator[WireEvent]) -> None:
        first = True
        try:
            while True:
                timeout = self._settings.request_timeout_seconds if first else None
                event = await self._next_event(stream, events, timeout=timeout)
                if event is _END:
                    return
                if isinstance(event, Mapping):
                    await self._track_ids(stream, event, first=first)
                first = False

                kind = event.get("kind") if isinstance(event, Mapping) else None
                if kind == "end":
                    return
                if kind == "error":
                    raise RunError(_error_message(event.get("data")))

                fragment = decode(event, on_error=self._on_decode_error)
                if fragment is None:
                    continue
                message = self._buffer.apply(fragment)
                if message.id not in stream.touched:
                    stream.touched.append(message.id)
                self._publish()
                if not message.is_complete and self._on_token is not None:
                    self._on_token(message.model_copy(deep=True))
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _next_event(self, stream: StreamHandle, events: AsyncIterator[WireEvent], *, timeout: float | None) -> Any:
        pull = asyncio.ensure_future(_pull(events))
        stop = asyncio.ensure_future(stream.cancel_token.wait())
        try:
            done, _ = await asyncio.wait({pull, stop}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (pull, stop):
                if not task.done():
                    task.cancel()
            await asyncio.wait({pull, stop})

        if stream.cancelled:
            if not pull.cancelled() and pull.exception() is not None:
                logger.info("discarding stream failure after cancel", extra={"error": str(pull.exception())})
            raise SessionCancelledError("stream cancelled")
        if pull not in done:
            raise StreamTimeoutError(message="no response from the agent service in time", status_code=504)
        return pull.result()

    async def _track_ids(self, stream: StreamHandle, event: Mapping[str, Any], *, first: bool) -> None:
        run_id = event.get("run_id")
        if isinstance(run_id, str) and run_id:
            stream.run_id = run_id

        reported = event.get("thread_id")
        if not first or not isinstance(reported, str) or not reported:
            return
        if self._threads.accept_reported_id(reported, generation=stream.generation) and stream.thread_id is None:
            stream.thread_id = reported
            pending, stream.pending_persist = stream.pending_persist, []
            for message in pending:
                await self._persist(reported, self._buffer.get(message.id) or message)

    async def _polled_events(self, thread_id: str, messages: list[dict[str, Any]]) -> AsyncIterator[WireEvent]:
        run_id = await self._transport.create_run(thread_id, messages=messages)
        ids: dict[str, str] = {"thread_id": thread_id, "run_id": run_id}
        yield {"kind": "metadata", "data": {"run_id": run_id}, **ids}

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.poll_timeout_seconds
        while True:
            status = await self._transport.get_run_status(thread_id, run_id)
            if status.is_terminal:
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise StreamTimeoutError(message="run did not finish before the polling deadline", status_code=504)
            await asyncio.sleep(min(self._settings.poll_interval_seconds, remaining))

        if status.status != "success":
            yield {"kind": "error", "data": {"message": status.error or f"Run ended with status {status.status}"}, **ids}
            return

        for raw_message in await self._transport.get_thread_messages(thread_id):
            if normalize_role(raw_message.get("type") or raw_message.get("role")) == "human":
                continue
            if raw_message.get("id") in self._buffer:
                continue
            yield {"kind": "fragment", "data": raw_message, "merge": "full", "final": True, **ids}
        yield {"kind": "end", **ids}

    def _fail(self, stream: StreamHandle, human: Message, error: SessionError) -> None:
        if stream.cancelled:
            logger.info("ignoring failure of a cancelled stream", extra={"thread_id": stream.thread_id, "error": str(error)})
            return
        logger.warning(
            "stream failed",
            extra={"thread_id": stream.thread_id, "status_code": error.status_code, "error": str(error)},
        )
        self._error = error
        self._failed_turn = _FailedTurn(human=human, partial_ids=list(stream.touched))
        if self._on_error is not None:
            self._on_error(error)

    async def _stop_stream(self) -> None:
        stream = self._stream
        self.cancel()
        if stream is not None and stream.task is not None and not stream.task.done():
            await stream.task

    def _reset_conversation(self) -> None:
        self._buffer.clear()
        self._error = None
        self._failed_turn = None
        self._last_text = None

    async def _load_history(self, thread_id: str) -> None:
        stored: list[Message] = []
        if self._store is not None:
            try:
                stored = await self._store.load_messages(thread_id)
            except Exception:
                logger.exception("failed to load stored messages", extra={"thread_id": thread_id})
        if stored:
            for message in stored:
                self._buffer.put(message)
            return

        try:
            raw_messages = await self._transport.get_thread_messages(thread_id)
        except SessionError as exc:
            logger.warning("failed to load thread history", extra={"thread_id": thread_id, "error": str(exc)})
            self._error = exc
            if self._on_error is not None:
                self._on_error(exc)
            return
        for raw_message in raw_messages:
            fragment = decode(
                {"kind": "fragment", "data": raw_message, "merge": "full", "final": True},
                on_error=self._on_decode_error,
            )
            if fragment is not None:
                self._buffer.apply(fragment)

    async def _persist_when_known(self, stream: StreamHandle, message: Message) -> None:
        if stream.thread_id is None:
            stream.pending_persist.append(message)
            return
        await self._persist(stream.thread_id, message)

    async def _persist(self, thread_id: str, message: Message) -> None:
        if self._store is None:
            return
        try:
            await self._store.persist_message(thread_id, message)
        except Exception:
            logger.exception("failed to persist message", extra={"thread_id": thread_id, "message_id": message.id})

    async def _forget(self, thread_id: str) -> None:
        if self._store is None:
            return
        try:
            await self._store.delete_thread(thread_id)
        except Exception:
            logger.exception("failed to delete stored messages", extra={"thread_id": thread_id})

    def _on_decode_error(self, detail: str) -> None:
        logger.warning("dropping undecodable stream event", extra={"detail": detail})

    def _publish(self) -> None:
        if self._on_update is not None:
            self._on_update(self.messages)

    def _spawn(self, coro: Coroutine[Any, Any, Any], *, loop: asyncio.AbstractEventLoop | None = None) -> asyncio.Task[Any]:
        task = (loop or asyncio.get_running_loop()).create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background task failed", exc_info=exc)


async def _pull(events: AsyncIterator[WireEvent]) -> Any:
    try:
        return await anext(events)
    except StopAsyncIteration:
        return _END


def _error_message(data: Any) -> str:
    if isinstance(data, str) and data:
        return data
    if isinstance(data, Mapping):
        for key in ("message", "error", "detail"):
            value = data.get(key)
            if isinstance(value, str) and value:
                return value
    return "Run failed"
