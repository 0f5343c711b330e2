from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar


@dataclass(eq=False)
class SessionError(Exception):
    """Base error surfaced through a session's single error field."""

    message: str
    status_code: int | None = None

    retryable: ClassVar[bool] = False

    def __str__(self) -> str:
        return self.message


class ConfigurationError(SessionError):
    """Missing endpoint or agent id; fatal."""


class AuthError(SessionError):
    """Expired or missing credential; retry after re-authentication."""

    retryable = True


class NetworkError(SessionError):
    """Connection, DNS or HTTP failure talking to the agent service."""

    retryable = True


class StreamTimeoutError(NetworkError):
    """No first event, or no terminal run status, within the configured ceiling."""


class ProtocolError(SessionError):
    """Malformed wire event."""


class RunError(SessionError):
    """The remote run reported a failure."""

    retryable = True


class SessionCancelledError(SessionError):
    """Local processing stopped on request; never surfaced as a failure."""
