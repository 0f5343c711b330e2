from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StaticCredentials:
    """Credentials fixed at startup, e.g. from environment configuration."""

    access_token: str | None = None
    user_id: str | None = None

    async def get_access_token(self) -> str | None:
        return self.access_token

    async def get_current_user_id(self) -> str | None:
        return self.user_id
