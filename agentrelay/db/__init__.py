"""Database module for agent relay state management and persistence."""

from agentrelay.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from agentrelay.db.models import (
    Agent,
    AgentConversation,
    AgentEvent,
    AgentEventStatus,
    AgentEventType,
    AgentMessage,
    AgentStatus,
    MessageRole,
)

__all__ = [
    # Models
    "Agent",
    "AgentConversation",
    "AgentEvent",
    "AgentMessage",
    # Enums
    "AgentStatus",
    "AgentEventType",
    "AgentEventStatus",
    "MessageRole",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
