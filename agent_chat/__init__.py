"""Client-side session manager for streaming conversations with a remote agent service."""

from agent_chat.services.session_controller import SessionController

__all__ = ["SessionController"]
