"""Dependency injection container assembly utilities."""

from agent_chat.dependency_injection.container import build_container, build_session

__all__ = ["build_container", "build_session"]
