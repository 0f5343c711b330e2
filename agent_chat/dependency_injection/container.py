from __future__ import annotations

from typing import Any

import punq

from agent_chat.core.settings import Settings
from agent_chat.services.contracts import AgentTransportProtocol, CredentialsProtocol, MessageStoreProtocol
from agent_chat.services.credentials import StaticCredentials
from agent_chat.services.langgraph_transport import LangGraphTransport
from agent_chat.services.message_store import InMemoryMessageStore, RedisMessageStore
from agent_chat.services.session_controller import SessionController


def build_container(settings: Settings) -> punq.Container:
    container = punq.Container()
    container.register(Settings, instance=settings)

    credentials = StaticCredentials(access_token=settings.access_token, user_id=settings.user_id)
    container.register(CredentialsProtocol, instance=credentials)
    container.register(
        AgentTransportProtocol,
        factory=lambda: LangGraphTransport(
            endpoint_url=settings.endpoint_url,
            agent_id=settings.agent_id,
            credentials=credentials if settings.access_token else None,
            api_key=settings.api_key,
            timeout_seconds=settings.request_timeout_seconds,
        ),
        scope=punq.Scope.singleton,
    )
    if settings.message_store_redis_url:
        container.register(
            MessageStoreProtocol,
            factory=lambda: RedisMessageStore(
                redis_url=settings.message_store_redis_url,
                key_prefix=settings.message_store_key_prefix,
            ),
            scope=punq.Scope.singleton,
        )
    else:
        container.register(MessageStoreProtocol, factory=InMemoryMessageStore, scope=punq.Scope.singleton)

    return container


def build_session(container: punq.Container, **observers: Any) -> SessionController:
    """Create a session bound to the container's collaborators.

    Sessions are not registered: each conversation gets its own controller.
    """
    return SessionController(
        transport=container.resolve(AgentTransportProtocol),
        settings=container.resolve(Settings),
        credentials=container.resolve(CredentialsProtocol),
        message_store=container.resolve(MessageStoreProtocol),
        **observers,
    )
