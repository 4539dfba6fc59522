"""Service layer for the agent relay.

Event lifecycle (store, factory, delivery, expiry, decisions), agent
identity, chat routing and the background runtime that wires them.
"""

from agentrelay.services.agent_service import AgentService
from agentrelay.services.decision_processor import Decision, DecisionInput, DecisionProcessor
from agentrelay.services.event_factory import EnsureOutcome, EventFactory
from agentrelay.services.event_store import EventStore
from agentrelay.services.runtime import RelayRuntime

__all__ = [
    "AgentService",
    "Decision",
    "DecisionInput",
    "DecisionProcessor",
    "EnsureOutcome",
    "EventFactory",
    "EventStore",
    "RelayRuntime",
]
