"""Session, history and memory collaborators for dingtalk-connector."""

from dingtalk_connector.session.history import MAX_TURNS, ConversationHistory, HistoryStore
from dingtalk_connector.session.manager import JsonSessionStore, SessionMetadata, SessionStore
from dingtalk_connector.session.memory import MemoryProvider, WorkspaceMemory

__all__ = [
    "MAX_TURNS",
    "ConversationHistory",
    "HistoryStore",
    "JsonSessionStore",
    "SessionMetadata",
    "SessionStore",
    "MemoryProvider",
    "WorkspaceMemory",
]
