from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

MessageRole = Literal["human", "agent", "system", "tool"]

TERMINAL_RUN_STATES: frozenset[str] = frozenset({"success", "error", "timeout", "interrupted"})


def utc_timestamp() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


class Message(BaseModel):
    """One conversation message as published to the UI.

    Instances are frozen; every update produces a new copy so readers never
    observe a message mid-update.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Message id, unique within one session's message list")
    role: MessageRole = Field(..., description="Normalized author role")
    content: str = Field(default="", description="Accumulated text content")
    is_complete: bool = Field(default=False, description="False while the message is still streaming")
    timestamp: str = Field(default_factory=utc_timestamp, description="ISO-8601 creation time, used for ordering")
    metadata: dict[str, Any] = Field(default_factory=dict, description="Union of fragment metadata")


class MessageFragment(BaseModel):
    """One normalized, incremental piece of a message produced by the event decoder."""

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    role: MessageRole | None = None
    content_delta: str | None = None
    content_full: str | None = None
    is_final: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class RunStatus(BaseModel):
    """Status of a non-streaming run as reported by the agent service."""

    status: str
    completed_at: str | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATES
