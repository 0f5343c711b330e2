from __future__ import annotations

import pytest

from agent_chat.core.errors import ConfigurationError
from agent_chat.core.settings import Settings

from tests.conftest import make_settings


def test_settings_read_environment_aliases(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_CHAT_ENDPOINT_URL", "http://agents.internal:2024")
    monkeypatch.setenv("AGENT_CHAT_AGENT_ID", "planner")
    monkeypatch.setenv("AGENT_CHAT_AUTO_CREATE_THREAD", "false")
    monkeypatch.setenv("AGENT_CHAT_REQUEST_TIMEOUT_MS", "2500")
    monkeypatch.setenv("AGENT_CHAT_USE_STREAMING", "0")

    settings = Settings(_env_file=None)

    assert settings.endpoint_url == "http://agents.internal:2024"
    assert settings.agent_id == "planner"
    assert settings.auto_create_thread is False
    assert settings.request_timeout_seconds == 2.5
    assert settings.use_streaming is False
    settings.require_endpoint()


def test_effective_log_level_defaults_by_environment() -> None:
    assert make_settings(APP_ENV="local").effective_log_level == "DEBUG"
    assert make_settings(APP_ENV="production").effective_log_level == "INFO"
    assert make_settings(APP_ENV="production", LOG_LEVEL="warning").effective_log_level == "WARNING"


def test_require_endpoint_names_missing_options() -> None:
    settings = make_settings(AGENT_CHAT_AGENT_ID="")

    with pytest.raises(ConfigurationError) as exc_info:
        settings.require_endpoint()

    assert str(exc_info.value) == "agent chat configuration missing: AGENT_CHAT_AGENT_ID"
    assert exc_info.value.retryable is False
