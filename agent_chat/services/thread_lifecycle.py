from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
import logging

from agent_chat.core.errors import ProtocolError, SessionCancelledError
from agent_chat.schemas.messages import utc_timestamp
from agent_chat.services.contracts import AgentTransportProtocol, CredentialsProtocol

logger = logging.getLogger(__name__)


class ThreadState(StrEnum):
    UNINITIALIZED = "uninitialized"
    CREATING = "creating"
    READY = "ready"


class ThreadOrigin(StrEnum):
    EXPLICIT = "explicit"
    STREAM_REPORTED = "stream_reported"


@dataclass(frozen=True)
class ThreadHandle:
    id: str | None = None
    state: ThreadState = ThreadState.UNINITIALIZED
    created_via: ThreadOrigin | None = None


class ThreadLifecycleManager:
    """Single owner of the active thread id for one session.

    Two writers compete for the id: explicit creation (``ensure``) and the id
    reported by the first event of a stream (``accept_reported_id``). The rule
    is that an explicitly created or selected thread always wins; a reported id
    is only taken while no thread exists and no creation is in flight. Only the
    reset operations (switch, new, delete) move a ready thread back.
    """

    def __init__(
        self,
        transport: AgentTransportProtocol,
        *,
        auto_create: bool = True,
        credentials: CredentialsProtocol | None = None,
    ) -> None:
        self._transport = transport
        self._auto_create = auto_create
        self._credentials = credentials
        self._handle = ThreadHandle()
        self._generation = 0
        self._creation: asyncio.Task[str] | None = None

    @property
    def handle(self) -> ThreadHandle:
        return self._handle

    @property
    def state(self) -> ThreadState:
        return self._handle.state

    @property
    def thread_id(self) -> str | None:
        if self._handle.state is ThreadState.READY:
            return self._handle.id
        return None

    @property
    def auto_create(self) -> bool:
        return self._auto_create

    @property
    def generation(self) -> int:
        """Counter bumped by every reset; lets callers detect stale work."""
        return self._generation

    async def ensure(self) -> str:
        """Return the active thread id, creating a thread at most once."""
        handle = self._handle
        if handle.state is ThreadState.READY and handle.id is not None:
            return handle.id
        if self._creation is None:
            self._handle = ThreadHandle(state=ThreadState.CREATING)
            self._creation = asyncio.get_running_loop().create_task(self._create(self._generation))
        return await asyncio.shield(self._creation)

    def accept_reported_id(self, thread_id: str, *, generation: int | None = None) -> bool:
        """Adopt a stream-reported thread id if no thread has been chosen yet."""
        handle = self._handle
        if generation is not None and generation != self._generation:
            logger.info(
                "discarding thread id reported by a stale stream",
                extra={"reported_thread_id": thread_id, "active_thread_id": handle.id},
            )
            return False
        if handle.state is ThreadState.UNINITIALIZED:
            self._handle = ThreadHandle(id=thread_id, state=ThreadState.READY, created_via=ThreadOrigin.STREAM_REPORTED)
            logger.info("adopted stream-reported thread id", extra={"thread_id": thread_id})
            return True
        if handle.state is ThreadState.READY and handle.id == thread_id:
            return True
        logger.info(
            "discarding stream-reported thread id",
            extra={"reported_thread_id": thread_id, "active_thread_id": handle.id, "thread_state": str(handle.state)},
        )
        return False

    def switch_to(self, thread_id: str) -> None:
        self._bump()
        self._handle = ThreadHandle(id=thread_id, state=ThreadState.READY, created_via=ThreadOrigin.EXPLICIT)
        logger.info("switched active thread", extra={"thread_id": thread_id})

    def reset(self) -> None:
        self._bump()
        self._handle = ThreadHandle()

    async def create_new(self) -> str:
        self.reset()
        return await self.ensure()

    async def delete(self, thread_id: str, *, replace: bool = True) -> str | None:
        """Delete a thread; deleting the active one replaces or clears it.

        With ``replace=False`` the active thread is only cleared and the caller
        finishes with ``replace_active()``.
        """
        await self._transport.delete_thread(thread_id)
        if thread_id != self._handle.id:
            return self.thread_id
        if not replace:
            self.reset()
            return None
        return await self.replace_active()

    async def delete_many(self, thread_ids: Sequence[str], *, replace: bool = True) -> str | None:
        await self._transport.batch_delete_threads(thread_ids)
        if self._handle.id not in thread_ids:
            return self.thread_id
        if not replace:
            self.reset()
            return None
        return await self.replace_active()

    async def rename(self, thread_id: str, title: str) -> None:
        await self._transport.rename_thread(thread_id, title)

    async def replace_active(self) -> str | None:
        if self._auto_create:
            return await self.create_new()
        self.reset()
        logger.info("no active thread after deleting the active thread")
        return None

    async def _create(self, generation: int) -> str:
        try:
            thread = await self._transport.create_thread(await self._thread_metadata())
            thread_id = thread.get("id")
            if not isinstance(thread_id, str) or not thread_id:
                raise ProtocolError("thread creation response carries no id")
        except BaseException:
            if generation == self._generation:
                self._handle = ThreadHandle()
                self._creation = None
            raise

        if generation != self._generation:
            logger.info("discarding thread created before a reset", extra={"thread_id": thread_id})
            raise SessionCancelledError("thread selection changed while creating a thread")

        self._handle = ThreadHandle(id=thread_id, state=ThreadState.READY, created_via=ThreadOrigin.EXPLICIT)
        self._creation = None
        logger.info("created thread", extra={"thread_id": thread_id})
        return thread_id

    async def _thread_metadata(self) -> dict[str, str]:
        metadata = {"created_at": utc_timestamp()}
        if self._credentials is not None:
            user_id = await self._credentials.get_current_user_id()
            if user_id:
                metadata["user_id"] = user_id
        return metadata

    def _bump(self) -> None:
        self._generation += 1
        self._creation = None
