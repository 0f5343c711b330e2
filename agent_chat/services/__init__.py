"""Service layer: wire decoding, message buffering, thread lifecycle and session orchestration."""

from agent_chat.services.credentials import StaticCredentials
from agent_chat.services.fragment_buffer import FragmentBuffer
from agent_chat.services.langgraph_transport import LangGraphTransport
from agent_chat.services.message_store import InMemoryMessageStore, RedisMessageStore
from agent_chat.services.session_controller import SessionController, StreamHandle
from agent_chat.services.thread_lifecycle import ThreadHandle, ThreadLifecycleManager, ThreadOrigin, ThreadState

__all__ = [
    "FragmentBuffer",
    "InMemoryMessageStore",
    "LangGraphTransport",
    "RedisMessageStore",
    "SessionController",
    "StaticCredentials",
    "StreamHandle",
    "ThreadHandle",
    "ThreadLifecycleManager",
    "ThreadOrigin",
    "ThreadState",
]
