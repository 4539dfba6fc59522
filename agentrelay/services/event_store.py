"""Persistence operations for agent events, conversations and messages.

All status transitions are conditional UPDATEs guarded on the current
status, so a check made earlier in a request is re-verified at write time.
Creation paths that have an idempotency boundary (open event per request
or negotiation, conversation per chat thread) run inside a SAVEPOINT and
treat a unique-constraint loser as "already exists".

Methods do NOT call db.commit(); the caller owns the transaction.
"""

import json
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agentrelay.db.models import (
    OPEN_EVENT_STATUSES,
    AgentConversation,
    AgentEvent,
    AgentEventStatus,
    AgentEventType,
    AgentMessage,
    ConversationStatus,
    MessageRole,
    to_iso,
    utc_now,
)
from agentrelay.services.payloads import dump_payload

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class EventStore:
    """CRUD and guarded transitions for the agent coordination records."""

    def __init__(self, db: Session, clock: Clock = utc_now) -> None:
        self.db = db
        self.clock = clock

    def now_iso(self) -> str:
        return to_iso(self.clock())

    # =========================================================================
    # Events
    # =========================================================================

    def get_event(self, event_id: str) -> AgentEvent | None:
        return self.db.get(AgentEvent, event_id)

    def find_open_event(
        self,
        agent_id: str,
        connection_request_id: str | None = None,
        negotiation_id: str | None = None,
    ) -> AgentEvent | None:
        """Find the PENDING/DELIVERED event for a request or negotiation."""
        query = self.db.query(AgentEvent).filter(
            AgentEvent.agent_id == agent_id,
            AgentEvent.status.in_(OPEN_EVENT_STATUSES),
        )
        if connection_request_id is not None:
            query = query.filter(AgentEvent.connection_request_id == connection_request_id)
        if negotiation_id is not None:
            query = query.filter(AgentEvent.negotiation_id == negotiation_id)
        return query.order_by(AgentEvent.created_at).first()

    def create_event(
        self,
        agent_id: str,
        event_type: AgentEventType,
        payload: BaseModel,
        ttl: timedelta,
        conversation_id: str | None = None,
        connection_request_id: str | None = None,
        negotiation_id: str | None = None,
    ) -> tuple[AgentEvent, bool]:
        """Insert a PENDING event, honouring the open-event unique indexes.

        expires_at is fixed here (now + ttl) and never moved afterwards.

        Returns:
            (event, created). When a concurrent writer already holds the
            open slot for the same request/negotiation, returns that event
            with created=False.
        """
        now = self.clock()
        event = AgentEvent(
            agent_id=agent_id,
            type=event_type.value,
            status=AgentEventStatus.PENDING.value,
            conversation_id=conversation_id,
            connection_request_id=connection_request_id,
            negotiation_id=negotiation_id,
            payload_json=dump_payload(payload),
            expires_at=to_iso(now + ttl),
            created_at=to_iso(now),
            updated_at=to_iso(now),
        )
        try:
            with self.db.begin_nested():
                self.db.add(event)
                self.db.flush()
        except IntegrityError:
            existing = self.find_open_event(
                agent_id,
                connection_request_id=connection_request_id,
                negotiation_id=negotiation_id,
            )
            if existing is None or (connection_request_id is None and negotiation_id is None):
                raise
            logger.info(
                "Open %s event already exists for agent %s (%s)",
                event_type.value, agent_id, existing.id,
            )
            return existing, False

        logger.info(
            "Created %s event %s for agent %s (expires %s)",
            event_type.value, event.id, agent_id, event.expires_at,
        )
        return event, True

    def mark_delivered(self, event_ids: Iterable[str]) -> int:
        """Flip PENDING events to DELIVERED. Never touches later statuses."""
        ids = list(event_ids)
        if not ids:
            return 0
        return (
            self.db.query(AgentEvent)
            .filter(
                AgentEvent.id.in_(ids),
                AgentEvent.status == AgentEventStatus.PENDING.value,
            )
            .update(
                {"status": AgentEventStatus.DELIVERED.value, "updated_at": self.now_iso()},
                synchronize_session="fetch",
            )
        )

    def record_webhook_attempt(self, event_id: str, delivered: bool) -> None:
        """Count one HTTP push attempt; flip PENDING->DELIVERED on success.

        The counter is incremented in SQL so concurrent or replayed
        dispatches add exactly one per attempt actually made.
        """
        now = self.now_iso()
        self.db.query(AgentEvent).filter(AgentEvent.id == event_id).update(
            {
                "webhook_attempts": AgentEvent.webhook_attempts + 1,
                "last_webhook_at": now,
            },
            synchronize_session="fetch",
        )
        if delivered:
            self.mark_delivered([event_id])

    def mark_decided(self, event: AgentEvent, decision: dict[str, Any]) -> bool:
        """Transition an open event to DECIDED, storing the decision body.

        Returns:
            False if the event left the open states before this write.
        """
        updated = (
            self.db.query(AgentEvent)
            .filter(
                AgentEvent.id == event.id,
                AgentEvent.status.in_(OPEN_EVENT_STATUSES),
            )
            .update(
                {
                    "status": AgentEventStatus.DECIDED.value,
                    "decision_json": json.dumps(decision),
                    "updated_at": self.now_iso(),
                },
                synchronize_session="fetch",
            )
        )
        return updated == 1

    def mark_expired(self, event_id: str) -> bool:
        """Transition an open event to EXPIRED.

        Returns:
            False if the event was already DECIDED or EXPIRED.
        """
        updated = (
            self.db.query(AgentEvent)
            .filter(
                AgentEvent.id == event_id,
                AgentEvent.status.in_(OPEN_EVENT_STATUSES),
            )
            .update(
                {"status": AgentEventStatus.EXPIRED.value, "updated_at": self.now_iso()},
                synchronize_session="fetch",
            )
        )
        return updated == 1

    def list_pollable(self, agent_id: str) -> list[AgentEvent]:
        """Open, unexpired events for an agent, oldest first."""
        return (
            self.db.query(AgentEvent)
            .filter(
                AgentEvent.agent_id == agent_id,
                AgentEvent.status.in_(OPEN_EVENT_STATUSES),
                AgentEvent.expires_at > self.now_iso(),
            )
            .order_by(AgentEvent.created_at, AgentEvent.id)
            .all()
        )

    def list_open_events(self) -> list[AgentEvent]:
        """Every PENDING/DELIVERED event, regardless of expiry."""
        return (
            self.db.query(AgentEvent)
            .filter(AgentEvent.status.in_(OPEN_EVENT_STATUSES))
            .order_by(AgentEvent.expires_at)
            .all()
        )

    def list_overdue_ids(self) -> list[str]:
        """Ids of open events whose expiry has passed."""
        rows = (
            self.db.query(AgentEvent.id)
            .filter(
                AgentEvent.status.in_(OPEN_EVENT_STATUSES),
                AgentEvent.expires_at <= self.now_iso(),
            )
            .all()
        )
        return [row[0] for row in rows]

    def last_decided_event(self, negotiation_id: str) -> AgentEvent | None:
        return (
            self.db.query(AgentEvent)
            .filter(
                AgentEvent.negotiation_id == negotiation_id,
                AgentEvent.status == AgentEventStatus.DECIDED.value,
            )
            .order_by(AgentEvent.updated_at.desc())
            .first()
        )

    # =========================================================================
    # Conversations
    # =========================================================================

    def get_conversation(self, conversation_id: str) -> AgentConversation | None:
        return self.db.get(AgentConversation, conversation_id)

    def create_conversation(
        self,
        agent_id: str,
        connection_request_id: str | None = None,
        negotiation_id: str | None = None,
        chat_thread_id: str | None = None,
        peer_user_id: str | None = None,
    ) -> AgentConversation:
        now = self.now_iso()
        conversation = AgentConversation(
            agent_id=agent_id,
            status=ConversationStatus.ACTIVE.value,
            connection_request_id=connection_request_id,
            negotiation_id=negotiation_id,
            chat_thread_id=chat_thread_id,
            peer_user_id=peer_user_id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(conversation)
        self.db.flush()
        return conversation

    def find_thread_conversation(
        self, agent_id: str, chat_thread_id: str
    ) -> AgentConversation | None:
        return (
            self.db.query(AgentConversation)
            .filter(
                AgentConversation.agent_id == agent_id,
                AgentConversation.chat_thread_id == chat_thread_id,
            )
            .first()
        )

    def find_thread_with_peer(
        self, agent_id: str, peer_user_id: str
    ) -> AgentConversation | None:
        """The agent's existing chat thread with a given human, if any."""
        return (
            self.db.query(AgentConversation)
            .filter(
                AgentConversation.agent_id == agent_id,
                AgentConversation.peer_user_id == peer_user_id,
                AgentConversation.chat_thread_id.is_not(None),
            )
            .order_by(AgentConversation.created_at)
            .first()
        )

    def find_negotiation_conversation(
        self, agent_id: str, negotiation_id: str
    ) -> AgentConversation | None:
        return (
            self.db.query(AgentConversation)
            .filter(
                AgentConversation.agent_id == agent_id,
                AgentConversation.negotiation_id == negotiation_id,
                AgentConversation.status == ConversationStatus.ACTIVE.value,
            )
            .first()
        )

    def ensure_thread_conversation(
        self, agent_id: str, chat_thread_id: str, peer_user_id: str
    ) -> tuple[AgentConversation, bool]:
        """Get or create the agent's conversation for a chat thread.

        Returns:
            (conversation, created). Race losers re-read the winner's row.
        """
        existing = self.find_thread_conversation(agent_id, chat_thread_id)
        if existing is not None:
            return existing, False
        try:
            with self.db.begin_nested():
                conversation = self.create_conversation(
                    agent_id, chat_thread_id=chat_thread_id, peer_user_id=peer_user_id
                )
        except IntegrityError:
            existing = self.find_thread_conversation(agent_id, chat_thread_id)
            if existing is None:
                raise
            return existing, False
        return conversation, True

    def attach_chat_thread(
        self, conversation: AgentConversation, chat_thread_id: str, peer_user_id: str
    ) -> AgentConversation:
        """Upgrade a one-sided conversation into one side of a chat thread.

        A no-op when the conversation already carries a thread id.
        """
        if conversation.chat_thread_id:
            return conversation
        conversation.chat_thread_id = chat_thread_id
        conversation.peer_user_id = peer_user_id
        conversation.updated_at = self.now_iso()
        self.db.flush()
        return conversation

    def close_conversation(
        self,
        conversation_id: str | None,
        status: ConversationStatus,
        decision: str | None = None,
        confidence: float | None = None,
        reason: str | None = None,
    ) -> None:
        """Move an ACTIVE conversation to DECIDED or EXPIRED."""
        if not conversation_id:
            return
        conversation = self.get_conversation(conversation_id)
        if conversation is None or conversation.status != ConversationStatus.ACTIVE.value:
            return
        conversation.status = status.value
        conversation.decision = decision
        conversation.decision_confidence = confidence
        conversation.decision_reason = reason
        conversation.updated_at = self.now_iso()
        self.db.flush()

    def list_conversations(self, agent_id: str) -> list[AgentConversation]:
        return (
            self.db.query(AgentConversation)
            .filter(AgentConversation.agent_id == agent_id)
            .order_by(AgentConversation.updated_at.desc())
            .all()
        )

    # =========================================================================
    # Messages
    # =========================================================================

    def append_message(
        self,
        conversation: AgentConversation,
        role: MessageRole,
        content: str,
        token_count: int | None = None,
    ) -> AgentMessage:
        """Append a message and bump the conversation's updated_at."""
        last_seq = (
            self.db.query(func.max(AgentMessage.sequence))
            .filter(AgentMessage.conversation_id == conversation.id)
            .scalar()
        )
        now = self.now_iso()
        message = AgentMessage(
            conversation_id=conversation.id,
            role=role.value,
            content=content,
            token_count=token_count,
            sequence=(last_seq or 0) + 1,
            created_at=now,
        )
        self.db.add(message)
        conversation.updated_at = now
        self.db.flush()
        return message

    def list_messages(self, conversation_id: str) -> list[AgentMessage]:
        return (
            self.db.query(AgentMessage)
            .filter(AgentMessage.conversation_id == conversation_id)
            .order_by(AgentMessage.sequence)
            .all()
        )

    def count_messages(self, conversation_id: str) -> int:
        return (
            self.db.query(func.count(AgentMessage.id))
            .filter(AgentMessage.conversation_id == conversation_id)
            .scalar()
        ) or 0
