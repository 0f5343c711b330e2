from __future__ import annotations

import logging

from pydantic import ValidationError
from redis.asyncio import Redis

from agent_chat.schemas.messages import Message

logger = logging.getLogger(__name__)


class InMemoryMessageStore:
    """Process-local message history, used when no Redis URL is configured."""

    def __init__(self) -> None:
        self._threads: dict[str, dict[str, Message]] = {}

    async def persist_message(self, thread_id: str, message: Message) -> None:
        self._threads.setdefault(thread_id, {})[message.id] = message

    async def load_messages(self, thread_id: str) -> list[Message]:
        messages = self._threads.get(thread_id, {})
        return sorted(messages.values(), key=lambda message: message.timestamp)

    async def delete_thread(self, thread_id: str) -> None:
        self._threads.pop(thread_id, None)

    async def close(self) -> None:
        self._threads.clear()


class RedisMessageStore:
    """Redis-backed message history; one hash per thread keyed by message id."""

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = "agent-chat:messages",
        redis_client: Redis | None = None,
    ) -> None:
        self._redis = redis_client if redis_client is not None else Redis.from_url(redis_url, decode_responses=True)
        self._key_prefix = key_prefix.strip(":")

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def persist_message(self, thread_id: str, message: Message) -> None:
        await self._redis.hset(self._thread_key(thread_id), message.id, message.model_dump_json())

    async def load_messages(self, thread_id: str) -> list[Message]:
        raw_messages = await self._redis.hgetall(self._thread_key(thread_id))
        messages: list[Message] = []
        for message_id, value in raw_messages.items():
            try:
                messages.append(Message.model_validate_json(value))
            except ValidationError:
                logger.warning(
                    "skipping unreadable stored message",
                    extra={"thread_id": thread_id, "message_id": message_id},
                )
        return sorted(messages, key=lambda message: message.timestamp)

    async def delete_thread(self, thread_id: str) -> None:
        await self._redis.delete(self._thread_key(thread_id))

    async def close(self) -> None:
        await self._redis.aclose()

    def _thread_key(self, thread_id: str) -> str:
        return f"{self._key_prefix}:thread:{thread_id}"
