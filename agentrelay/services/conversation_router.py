"""Two-sided agent chat threads.

Each logical chat between two users is stored twice, once per agent,
linked by a shared ``chat_thread_id``. Every routed message is appended to
both sides (AGENT on the sender's, USER on the recipient's) and raises a
NEW_MESSAGE event for the recipient's agent, so the two histories stay
role-swapped mirrors of each other.

Methods do NOT call db.commit(); callers commit the whole unit and then
fire ``agent/event.created`` for the returned event.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from agentrelay.db.models import (
    Agent,
    AgentEventType,
    AgentStatus,
    MessageRole,
    User,
    utc_now,
)
from agentrelay.services.event_factory import DEFAULT_TTL, user_snapshot
from agentrelay.services.event_store import EventStore
from agentrelay.services.idempotency import IdFactory, uuid_factory
from agentrelay.services.payloads import NewMessagePayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutedMessage:
    event_id: str
    chat_thread_id: str
    sender_conversation_id: str
    recipient_conversation_id: str


class ConversationRouter:
    def __init__(
        self,
        db: Session,
        ttl: timedelta = DEFAULT_TTL,
        id_factory: IdFactory = uuid_factory,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.ttl = ttl
        self.id_factory = id_factory
        self.store = EventStore(db, clock=clock)

    def thread_id_for(self, sender_agent_id: str, target_user_id: str) -> str:
        """Reuse the sender's thread with this user, else mint a new one."""
        existing = self.store.find_thread_with_peer(sender_agent_id, target_user_id)
        if existing is not None:
            return existing.chat_thread_id
        return self.id_factory()

    def route_message(
        self, sender: Agent, target_user_id: str, content: str
    ) -> RoutedMessage | None:
        """Deliver ``content`` from ``sender``'s agent to the target's agent.

        Returns:
            The routed message, or None when the target has no ACTIVE
            agent (nothing is written in that case).
        """
        if not sender.user_id:
            raise ValueError("Sender agent must be claimed to route messages")

        target_agent = (
            self.db.query(Agent)
            .filter(Agent.user_id == target_user_id, Agent.status == AgentStatus.ACTIVE.value)
            .first()
        )
        if target_agent is None:
            return None

        chat_thread_id = self.thread_id_for(sender.id, target_user_id)

        sender_conv, _ = self.store.ensure_thread_conversation(
            sender.id, chat_thread_id, target_user_id
        )
        self.store.append_message(sender_conv, MessageRole.AGENT, content)

        recipient_conv, _ = self.store.ensure_thread_conversation(
            target_agent.id, chat_thread_id, sender.user_id
        )
        self.store.append_message(recipient_conv, MessageRole.USER, content)

        sender_user = self.db.get(User, sender.user_id)
        payload = NewMessagePayload(
            chat_thread_id=chat_thread_id,
            sender_user_id=sender.user_id,
            sender=user_snapshot(sender_user),
            content=content,
        )
        event, _ = self.store.create_event(
            target_agent.id,
            AgentEventType.NEW_MESSAGE,
            payload,
            self.ttl,
            conversation_id=recipient_conv.id,
        )
        logger.info(
            "Routed message on thread %s from agent %s to agent %s",
            chat_thread_id, sender.id, target_agent.id,
        )
        return RoutedMessage(
            event_id=event.id,
            chat_thread_id=chat_thread_id,
            sender_conversation_id=sender_conv.id,
            recipient_conversation_id=recipient_conv.id,
        )
