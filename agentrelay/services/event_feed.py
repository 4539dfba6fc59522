"""Pull-based event delivery and agent-facing read models."""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from agentrelay.db.models import (
    AgentConversation,
    AgentEvent,
    AgentEventStatus,
    AgentMessage,
    utc_now,
)
from agentrelay.errors import NotFoundError
from agentrelay.services.event_store import EventStore

logger = logging.getLogger(__name__)


def serialize_event(event: AgentEvent, status: str | None = None) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": event.id,
        "type": event.type,
        "status": status or event.status,
        "payload": event.payload,
        "conversationId": event.conversation_id,
        "connectionRequestId": event.connection_request_id,
        "negotiationId": event.negotiation_id,
        "expiresAt": event.expires_at,
        "createdAt": event.created_at,
    }
    request = event.connection_request
    if request is not None:
        data["connectionRequest"] = {
            "id": request.id,
            "category": request.category,
            "intent": request.intent,
            "status": request.status,
            "fromUser": request.from_user.public_profile(),
        }
    return data


def serialize_message(message: AgentMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "sequence": message.sequence,
        "createdAt": message.created_at,
    }


def serialize_conversation(
    conversation: AgentConversation, include_messages: bool = False
) -> dict[str, Any]:
    messages = conversation.messages
    data: dict[str, Any] = {
        "id": conversation.id,
        "status": conversation.status,
        "connectionRequestId": conversation.connection_request_id,
        "negotiationId": conversation.negotiation_id,
        "chatThreadId": conversation.chat_thread_id,
        "peerUserId": conversation.peer_user_id,
        "decision": conversation.decision,
        "messageCount": len(messages),
        "lastMessage": serialize_message(messages[-1]) if messages else None,
        "updatedAt": conversation.updated_at,
    }
    if include_messages:
        data["messages"] = [serialize_message(m) for m in messages]
    return data


class EventFeed:
    """Poll endpoint backing service. ``poll`` commits."""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self.store = EventStore(db, clock=clock)

    def poll(self, agent_id: str) -> list[dict[str, Any]]:
        """Open, unexpired events oldest first; PENDING ones become DELIVERED."""
        events = self.store.list_pollable(agent_id)
        serialized = [serialize_event(e) for e in events]
        pending_ids = [e.id for e in events if e.status == AgentEventStatus.PENDING.value]
        flipped = self.store.mark_delivered(pending_ids)
        self.db.commit()
        if flipped:
            logger.info("Poll delivered %d event(s) to agent %s", flipped, agent_id)
        return serialized

    def conversations(self, agent_id: str) -> list[dict[str, Any]]:
        return [serialize_conversation(c) for c in self.store.list_conversations(agent_id)]

    def conversation(self, agent_id: str, conversation_id: str) -> dict[str, Any]:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None or conversation.agent_id != agent_id:
            raise NotFoundError("Conversation", conversation_id)
        return serialize_conversation(conversation, include_messages=True)
