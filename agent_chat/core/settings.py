from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_chat.core.errors import ConfigurationError


class Settings(BaseSettings):
    """Runtime configuration loaded from env vars and local env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_env: str = Field(default="local", alias="APP_ENV")
    log_level: str | None = Field(default=None, alias="LOG_LEVEL")

    endpoint_url: str = Field(default="", alias="AGENT_CHAT_ENDPOINT_URL")
    agent_id: str = Field(default="", alias="AGENT_CHAT_AGENT_ID")
    auto_create_thread: bool = Field(default=True, alias="AGENT_CHAT_AUTO_CREATE_THREAD")
    request_timeout_ms: int = Field(default=30000, alias="AGENT_CHAT_REQUEST_TIMEOUT_MS")
    poll_interval_ms: int = Field(default=1000, alias="AGENT_CHAT_POLL_INTERVAL_MS")
    poll_timeout_ms: int = Field(default=120000, alias="AGENT_CHAT_POLL_TIMEOUT_MS")
    use_streaming: bool = Field(default=True, alias="AGENT_CHAT_USE_STREAMING")

    api_key: str | None = Field(default=None, alias="AGENT_CHAT_API_KEY")
    access_token: str | None = Field(default=None, alias="AGENT_CHAT_ACCESS_TOKEN")
    user_id: str | None = Field(default=None, alias="AGENT_CHAT_USER_ID")

    message_store_redis_url: str | None = Field(default=None, alias="AGENT_CHAT_MESSAGE_STORE_REDIS_URL")
    message_store_key_prefix: str = Field(default="agent-chat:messages", alias="AGENT_CHAT_MESSAGE_STORE_KEY_PREFIX")

    @property
    def effective_log_level(self) -> str:
        if self.log_level:
            return self.log_level.upper()
        return "DEBUG" if self.app_env.lower() == "local" else "INFO"

    @property
    def request_timeout_seconds(self) -> float:
        return self.request_timeout_ms / 1000

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000

    @property
    def poll_timeout_seconds(self) -> float:
        return self.poll_timeout_ms / 1000

    def require_endpoint(self) -> None:
        """Fail fast when the agent endpoint is not configured."""
        missing = [
            alias
            for alias, value in (
                ("AGENT_CHAT_ENDPOINT_URL", self.endpoint_url),
                ("AGENT_CHAT_AGENT_ID", self.agent_id),
            )
            if not value.strip()
        ]
        if missing:
            raise ConfigurationError(f"agent chat configuration missing: {', '.join(missing)}")


@lru_cache
def get_settings() -> Settings:
    return Settings()
