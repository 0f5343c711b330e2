from __future__ import annotations

import logging

from agent_chat.schemas.messages import Message, MessageFragment
from agent_chat.services.event_decoder import synthesize_message_id

logger = logging.getLogger(__name__)


class FragmentBuffer:
    """Accumulates fragments into messages keyed by message id.

    Stored messages are immutable; each update replaces the entry with a new
    copy. Fragments for different ids may interleave freely, fragments for one
    id are merged in the order they are applied.
    """

    def __init__(self) -> None:
        self._messages: dict[str, Message] = {}
        self._pending: set[str] = set()

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def pending_ids(self) -> frozenset[str]:
        return frozenset(self._pending)

    def apply(self, fragment: MessageFragment) -> Message:
        """Merge a fragment and return the current state of its message."""
        message_id = fragment.id or synthesize_message_id()
        existing = self._messages.get(message_id)

        if existing is None:
            content = fragment.content_full if fragment.content_full is not None else fragment.content_delta or ""
            message = Message(
                id=message_id,
                role=fragment.role or "agent",
                content=content,
                is_complete=fragment.is_final,
                metadata=dict(fragment.metadata),
            )
        elif existing.is_complete:
            logger.debug("ignoring fragment for completed message", extra={"message_id": message_id})
            return existing
        else:
            if fragment.content_full is not None:
                content = fragment.content_full
            else:
                content = existing.content + (fragment.content_delta or "")
            message = existing.model_copy(
                update={
                    "content": content,
                    "is_complete": fragment.is_final,
                    "metadata": {**existing.metadata, **fragment.metadata},
                }
            )

        self._store(message)
        return message

    def put(self, message: Message) -> None:
        """Insert a whole message, e.g. a submitted human message or loaded history."""
        self._store(message)

    def mark_complete(self, message_id: str) -> Message | None:
        message = self._messages.get(message_id)
        if message is None or message.is_complete:
            return message
        message = message.model_copy(update={"is_complete": True})
        self._store(message)
        return message

    def discard(self, message_id: str) -> None:
        self._messages.pop(message_id, None)
        self._pending.discard(message_id)

    def get(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    def get_all(self) -> list[Message]:
        """Return messages ordered by timestamp, ties kept in insertion order."""
        return sorted(self._messages.values(), key=lambda message: message.timestamp)

    def clear(self) -> None:
        self._messages.clear()
        self._pending.clear()

    def _store(self, message: Message) -> None:
        self._messages[message.id] = message
        if message.is_complete:
            self._pending.discard(message.id)
        else:
            self._pending.add(message.id)
