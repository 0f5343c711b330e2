from __future__ import annotations

from collections.abc import Callable, Mapping
import logging
import secrets
import time
from typing import Any, get_args

from agent_chat.core.errors import ProtocolError
from agent_chat.schemas.messages import MessageFragment, MessageRole
from agent_chat.services.chat_stream import WireEventKind

logger = logging.getLogger(__name__)

_KNOWN_KINDS = frozenset(get_args(WireEventKind))

_ROLE_ALIASES: dict[str, MessageRole] = {
    "human": "human",
    "user": "human",
    "ai": "agent",
    "assistant": "agent",
    "system": "system",
    "tool": "tool",
}

_TYPE_SUFFIXES = ("messagechunk", "message")


def normalize_role(raw_role: object) -> MessageRole:
    """Map server role/type names onto message roles; unknown names become ``agent``."""
    if not isinstance(raw_role, str):
        return "agent"
    key = raw_role.strip().lower()
    for suffix in _TYPE_SUFFIXES:
        if key.endswith(suffix) and key != suffix:
            key = key[: -len(suffix)]
            break
    return _ROLE_ALIASES.get(key, "agent")


def synthesize_message_id() -> str:
    return f"msg-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def extract_text(content: object) -> str:
    """Flatten string or content-block payloads into plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list | tuple):
        parts: list[str] = []
        for block in content:
            if not isinstance(block, Mapping) or block.get("type") != "text":
                continue
            text = block.get("text")
            if isinstance(text, str):
                parts.append(text)
        return "\n".join(parts)
    raise ProtocolError(f"unsupported content payload of type {type(content).__name__}")


def decode(raw_event: object, on_error: Callable[[str], None] | None = None) -> MessageFragment | None:
    """Turn one wire event into a fragment.

    Returns ``None`` for empty input, non-fragment kinds and anything that
    cannot be decoded. Decode failures are reported through ``on_error`` and
    never raised.
    """
    try:
        return _decode(raw_event)
    except Exception as exc:  # noqa: BLE001
        detail = f"could not decode wire event: {exc}"
        logger.debug(detail)
        if on_error is not None:
            on_error(detail)
        return None


def _decode(raw_event: object) -> MessageFragment | None:
    if raw_event is None:
        return None
    if not isinstance(raw_event, Mapping):
        raise ProtocolError(f"expected a mapping, got {type(raw_event).__name__}")

    kind = raw_event.get("kind")
    if kind not in _KNOWN_KINDS:
        logger.debug("ignoring wire event", extra={"kind": kind})
        return None
    if kind != "fragment":
        return None

    payload, metadata = _split_payload(raw_event.get("data"))

    raw_id = payload.get("id") or payload.get("message_id")
    message_id = str(raw_id) if raw_id else synthesize_message_id()

    merge = raw_event.get("merge") or ("delta" if _is_chunk(payload) else "full")
    if merge not in ("delta", "full"):
        raise ProtocolError(f"unknown merge mode {merge!r}")

    content = _payload_content(payload)
    for key in ("additional_kwargs", "metadata"):
        extra = payload.get(key)
        if isinstance(extra, Mapping):
            metadata.update(extra)
    run_id = raw_event.get("run_id")
    if isinstance(run_id, str):
        metadata.setdefault("run_id", run_id)

    return MessageFragment(
        id=message_id,
        role=normalize_role(payload.get("role") or payload.get("type")),
        content_delta=content if merge == "delta" else None,
        content_full=content if merge == "full" else None,
        is_final=bool(raw_event.get("final") or payload.get("is_final")),
        metadata=metadata,
    )


def _split_payload(data: Any) -> tuple[Mapping[str, Any], dict[str, Any]]:
    if isinstance(data, str):
        return {"content": data}, {}
    if isinstance(data, Mapping):
        return data, {}
    # messages-tuple mode: [message_chunk, stream_metadata]
    if isinstance(data, list | tuple) and len(data) == 2 and isinstance(data[0], Mapping):
        stream_metadata = data[1] if isinstance(data[1], Mapping) else {}
        return data[0], dict(stream_metadata)
    if data is None:
        raise ProtocolError("fragment event carries no data")
    raise ProtocolError(f"unsupported fragment data of type {type(data).__name__}")


def _payload_content(payload: Mapping[str, Any]) -> str:
    content = payload.get("content")
    if content is not None:
        return extract_text(content)
    text = payload.get("text")
    if isinstance(text, str):
        return text
    return ""


def _is_chunk(payload: Mapping[str, Any]) -> bool:
    message_type = payload.get("type")
    return isinstance(message_type, str) and message_type.endswith("Chunk")
