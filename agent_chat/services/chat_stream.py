from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator
from typing import Any, Literal, Required, TypedDict

from agent_chat.schemas.messages import Message

WireEventKind = Literal["fragment", "error", "end"]


class WireEvent(TypedDict, total=False):
    kind: Required[str]
    data: Any
    thread_id: str
    run_id: str
    final: bool
    merge: Literal["delta", "full"]


_WIRE_ROLE_BY_ROLE = {
    "human": "human",
    "agent": "ai",
    "system": "system",
    "tool": "tool",
}


def encode_message(message: Message) -> dict[str, Any]:
    """Encode a message into the agent service's input message shape."""
    payload: dict[str, Any] = {
        "id": message.id,
        "type": _WIRE_ROLE_BY_ROLE[message.role],
        "content": message.content,
    }
    attachments = message.metadata.get("attachments")
    if attachments:
        payload["additional_kwargs"] = {"attachments": attachments}
    return payload


async def parse_sse_lines(lines: AsyncIterable[str]) -> AsyncIterator[tuple[str, str]]:
    """Group ``text/event-stream`` lines into ``(event, data)`` pairs."""
    event: str | None = None
    data_lines: list[str] = []
    async for raw_line in lines:
        line = raw_line.rstrip("\r\n")
        if not line:
            if event is not None or data_lines:
                yield event or "message", "\n".join(data_lines)
            event = None
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)

    if event is not None or data_lines:
        yield event or "message", "\n".join(data_lines)
