"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from agentrelay.api.routes import agent_actions, agent_events, agents, listings

__all__ = [
    "agents",
    "agent_events",
    "agent_actions",
    "listings",
]
