from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any, Protocol

from agent_chat.schemas.messages import Message, RunStatus
from agent_chat.services.chat_stream import WireEvent


class AgentTransportProtocol(Protocol):
    """Boundary with the remote agent service: threads, runs and event streams."""

    async def create_thread(self, metadata: Mapping[str, Any] | None = None) -> dict[str, str]:
        """Create a thread and return ``{"id": thread_id}``."""

    def open_stream(self, thread_id: str | None, *, messages: Sequence[Mapping[str, Any]]) -> AsyncIterator[WireEvent]:
        """Start a run and stream its events; ``thread_id=None`` lets the server create the thread."""

    async def cancel_stream(self, thread_id: str, run_id: str) -> None:
        """Ask the service to stop a run. Best effort, never raises."""

    async def delete_thread(self, thread_id: str) -> None:
        """Delete one thread on the service."""

    async def rename_thread(self, thread_id: str, title: str) -> None:
        """Store a display title in thread metadata."""

    async def batch_delete_threads(self, thread_ids: Sequence[str]) -> None:
        """Delete several threads, attempting every id before reporting failures."""

    async def create_run(self, thread_id: str, *, messages: Sequence[Mapping[str, Any]]) -> str:
        """Start a run without streaming and return its run id."""

    async def get_run_status(self, thread_id: str, run_id: str) -> RunStatus:
        """Return the current status of a run started with ``create_run``."""

    async def get_thread_messages(self, thread_id: str) -> list[dict[str, Any]]:
        """Return the raw messages stored in the thread state."""

    async def health_check(self) -> bool:
        """Probe the service; ``False`` on any failure."""

    async def aclose(self) -> None:
        """Release network resources."""


class CredentialsProtocol(Protocol):
    """Authentication collaborator supplying an opaque bearer token and the current user."""

    async def get_access_token(self) -> str | None:
        """Return the bearer token, or ``None`` when the user is signed out."""

    async def get_current_user_id(self) -> str | None:
        """Return the id of the signed-in user, if any."""


class MessageStoreProtocol(Protocol):
    """Persistence collaborator for thread message history."""

    async def persist_message(self, thread_id: str, message: Message) -> None:
        """Insert or replace a message within a thread."""

    async def load_messages(self, thread_id: str) -> list[Message]:
        """Return a thread's messages ordered by timestamp."""

    async def delete_thread(self, thread_id: str) -> None:
        """Drop every stored message for a thread."""

    async def close(self) -> None:
        """Release underlying resources."""
