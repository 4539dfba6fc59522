"""Agent-authored messages: event replies and direct chat.

Replying to a NEW_MESSAGE event only routes the reply onward, because the
inbound message was already mirrored onto both sides when it was routed.
Replying to any other event first upgrades its one-sided conversation to a
chat thread (while it is still empty) and then routes; if nobody can
receive it the reply is kept locally.

Methods commit and then fire ``agent/event.created`` for routed events.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import or_
from sqlalchemy.orm import Session

from agentrelay.db.models import (
    Agent,
    AgentConversation,
    AgentEvent,
    AgentEventStatus,
    AgentEventType,
    AgentStatus,
    Connection,
    MessageRole,
    Negotiation,
    User,
    from_iso,
    utc_now,
)
from agentrelay.errors import (
    AlreadyDecidedError,
    ExpiredError,
    ForbiddenError,
    NoActiveAgentError,
    NotFoundError,
    ValidationError,
)
from agentrelay.services.agent_service import require_claimed
from agentrelay.services.conversation_router import ConversationRouter, RoutedMessage
from agentrelay.services.event_factory import DEFAULT_TTL
from agentrelay.services.event_store import EventStore
from agentrelay.services.idempotency import IdFactory, uuid_factory
from agentrelay.services.payloads import NewMessagePayload, parse_payload
from agentrelay.services.task_queue import EVENT_CREATED, TriggerSender

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplyResult:
    conversation_id: str | None
    routed: RoutedMessage | None = None


class MessagingService:
    def __init__(
        self,
        db: Session,
        queue: TriggerSender,
        ttl: timedelta = DEFAULT_TTL,
        id_factory: IdFactory = uuid_factory,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.queue = queue
        self.clock = clock
        self.store = EventStore(db, clock=clock)
        self.router = ConversationRouter(db, ttl=ttl, id_factory=id_factory, clock=clock)

    def _load_event(self, event_id: str, agent: Agent) -> AgentEvent:
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError("Event", event_id)
        if event.agent_id != agent.id:
            raise ForbiddenError("Forbidden")
        if event.status == AgentEventStatus.EXPIRED.value or self.clock() > from_iso(event.expires_at):
            raise ExpiredError()
        return event

    def _finish(self, routed: RoutedMessage | None) -> None:
        self.db.commit()
        if routed is not None:
            self.queue.send(EVENT_CREATED, {"eventId": routed.event_id})

    def reply(self, event_id: str, agent: Agent, content: str) -> ReplyResult:
        """Reply to an event on behalf of its agent.

        Raises:
            NotFoundError, ForbiddenError, ExpiredError
            ValidationError: NEW_MESSAGE reply from an unclaimed agent or
                on a payload without a sender.
            AlreadyDecidedError: NEW_MESSAGE event was already answered.
        """
        event = self._load_event(event_id, agent)
        if event.type == AgentEventType.NEW_MESSAGE.value:
            return self._reply_to_message(event, agent, content)
        return self._reply_in_conversation(event, agent, content)

    def _reply_to_message(self, event: AgentEvent, agent: Agent, content: str) -> ReplyResult:
        if not agent.user_id:
            raise ValidationError("Agent not claimed")
        try:
            payload = parse_payload(event.type, event.payload)
        except ValidationError:
            raise ValidationError("Invalid event payload") from None
        if not isinstance(payload, NewMessagePayload) or not payload.sender_user_id:
            raise ValidationError("Invalid event payload")

        if not self.store.mark_decided(event, {"action": "REPLY"}):
            self.db.rollback()
            raise AlreadyDecidedError(event.id)

        routed = self.router.route_message(agent, payload.sender_user_id, content)
        self._finish(routed)
        return ReplyResult(conversation_id=event.conversation_id, routed=routed)

    def _reply_in_conversation(self, event: AgentEvent, agent: Agent, content: str) -> ReplyResult:
        conversation = event.conversation
        if conversation is None:
            conversation = self.store.create_conversation(
                agent.id,
                connection_request_id=event.connection_request_id,
                negotiation_id=event.negotiation_id,
            )
            event.conversation_id = conversation.id

        peer_user_id = self._peer_of(event, agent)
        routed = None
        if agent.user_id and peer_user_id and self._has_active_agent(peer_user_id):
            self._upgrade_to_thread(conversation, agent, peer_user_id)
            routed = self.router.route_message(agent, peer_user_id, content)

        if routed is None:
            # Nobody to forward to; keep the reply on this side only
            self.store.append_message(conversation, MessageRole.AGENT, content)
            conversation_id = conversation.id
        else:
            conversation_id = routed.sender_conversation_id
        self._finish(routed)
        return ReplyResult(conversation_id=conversation_id, routed=routed)

    def _upgrade_to_thread(
        self, conversation: AgentConversation, agent: Agent, peer_user_id: str
    ) -> None:
        """Make ``conversation`` this agent's side of its chat with the peer.

        Only an empty conversation is attached. One that already holds
        local-only replies stays one-sided and the router opens a fresh
        thread conversation, since both sides of a thread must hold the same
        messages.
        """
        if conversation.chat_thread_id:
            return
        if self.store.find_thread_with_peer(agent.id, peer_user_id) is not None:
            return
        if self.store.count_messages(conversation.id) > 0:
            return
        self.store.attach_chat_thread(conversation, self.router.id_factory(), peer_user_id)

    def _has_active_agent(self, user_id: str) -> bool:
        return (
            self.db.query(Agent.id)
            .filter(Agent.user_id == user_id, Agent.status == AgentStatus.ACTIVE.value)
            .first()
        ) is not None

    def _peer_of(self, event: AgentEvent, agent: Agent) -> str | None:
        if event.connection_request is not None:
            request = event.connection_request
            return request.from_user_id if request.to_user_id == agent.user_id else request.to_user_id
        if event.negotiation_id:
            negotiation = self.db.get(Negotiation, event.negotiation_id)
            if negotiation is not None:
                return (
                    negotiation.buyer_id
                    if negotiation.seller_id == agent.user_id
                    else negotiation.seller_id
                )
        return None

    def send_message(self, agent: Agent, target_user_id: str, content: str) -> RoutedMessage:
        """Start or continue a chat with a connected user's agent.

        Raises:
            UnclaimedAgentError, ValidationError (self), NotFoundError,
            ForbiddenError (not connected), NoActiveAgentError
        """
        user_id = require_claimed(agent, "Agent must be claimed to send messages")
        if target_user_id == user_id:
            raise ValidationError("Cannot message yourself")
        if self.db.get(User, target_user_id) is None:
            raise NotFoundError("User", target_user_id)

        connected = (
            self.db.query(Connection)
            .filter(
                or_(
                    (Connection.user_a_id == user_id) & (Connection.user_b_id == target_user_id),
                    (Connection.user_a_id == target_user_id) & (Connection.user_b_id == user_id),
                )
            )
            .first()
        )
        if connected is None:
            raise ForbiddenError("Not connected with this user")

        routed = self.router.route_message(agent, target_user_id, content)
        if routed is None:
            raise NoActiveAgentError()
        self._finish(routed)
        return routed
