from agent_chat.schemas.messages import Message, MessageFragment, MessageRole, RunStatus

__all__ = ["Message", "MessageFragment", "MessageRole", "RunStatus"]
