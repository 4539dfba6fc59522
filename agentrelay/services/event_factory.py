"""Turns domain occurrences into agent events.

Each ``ensure_*`` call is idempotent: repeating it for the same request or
negotiation returns the already-open event instead of creating a second
one. When the addressed user has no ACTIVE agent, connection requests fall
back to a one-time notification and negotiations expire.

Methods do NOT call db.commit(); the caller owns the transaction and
fires ``agent/event.created`` once it has committed a created event.

Example:
    result = EventFactory(db, ttl).ensure_event_for_connection_request(req.id)
    db.commit()
    if result.created:
        queue.send(EVENT_CREATED, {"eventId": result.event_id})
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.orm import Session

from agentrelay.db.models import (
    Agent,
    AgentEventType,
    AgentStatus,
    ConnectionRequest,
    ConnectionRequestStatus,
    Negotiation,
    NegotiationStatus,
    NotificationType,
    User,
    to_iso,
    utc_now,
)
from agentrelay.services.event_store import EventStore
from agentrelay.services.notification_service import NotificationService
from agentrelay.services.payloads import (
    ConnectionRequestPayload,
    ListingSnapshot,
    NegotiationOfferPayload,
    NegotiationTurnPayload,
    UserSnapshot,
)

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


class EnsureOutcome(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    NO_ACTIVE_AGENT = "no_active_agent"
    SKIP = "skip"


@dataclass(frozen=True)
class EnsureResult:
    outcome: EnsureOutcome
    event_id: str | None = None

    @property
    def created(self) -> bool:
        return self.outcome is EnsureOutcome.CREATED


def user_snapshot(user: User) -> UserSnapshot:
    profile = user.public_profile()
    return UserSnapshot(
        username=profile["username"],
        display_name=profile["displayName"],
        bio=profile["bio"],
        interests=profile["interests"],
    )


class EventFactory:
    def __init__(
        self,
        db: Session,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.ttl = ttl
        self.clock = clock
        self.store = EventStore(db, clock=clock)
        self.notifications = NotificationService(db)

    def _agent_for(self, user_id: str) -> Agent | None:
        return self.db.query(Agent).filter(Agent.user_id == user_id).first()

    # =========================================================================
    # Connection requests
    # =========================================================================

    def ensure_event_for_connection_request(self, request_id: str) -> EnsureResult:
        request = self.db.get(ConnectionRequest, request_id)
        if request is None:
            logger.warning("Connection request %s not found", request_id)
            return EnsureResult(EnsureOutcome.SKIP)
        if request.status != ConnectionRequestStatus.PENDING.value:
            return EnsureResult(EnsureOutcome.SKIP)

        agent = self._agent_for(request.to_user_id)
        if agent is None or agent.status != AgentStatus.ACTIVE.value:
            _, created = self.notifications.notify_once(
                f"connection-request:{request_id}:no-agent",
                request.to_user_id,
                NotificationType.CONNECTION_REQUEST,
                "New connection request",
                "Connect an agent to process requests automatically.",
                {"requestId": request_id},
            )
            if created:
                logger.info("No active agent for user %s; notified instead", request.to_user_id)
            return EnsureResult(EnsureOutcome.NO_ACTIVE_AGENT)

        existing = self.store.find_open_event(agent.id, connection_request_id=request_id)
        if existing is not None:
            return EnsureResult(EnsureOutcome.ALREADY_EXISTS, existing.id)

        payload = ConnectionRequestPayload(
            request_id=request_id,
            from_user=user_snapshot(request.from_user),
            category=request.category,
            intent=request.intent,
            stake_amount=request.stake_amount,
        )
        event, created = self.store.create_event(
            agent.id,
            AgentEventType.CONNECTION_REQUEST,
            payload,
            self.ttl,
            connection_request_id=request_id,
        )
        if not created:
            return EnsureResult(EnsureOutcome.ALREADY_EXISTS, event.id)

        conversation = self.store.create_conversation(
            agent.id,
            connection_request_id=request_id,
            peer_user_id=request.from_user_id,
        )
        event.conversation_id = conversation.id
        self.db.flush()
        return EnsureResult(EnsureOutcome.CREATED, event.id)

    # =========================================================================
    # Negotiations
    # =========================================================================

    def ensure_event_for_negotiation_offer(
        self, negotiation_id: str, message: str | None = None
    ) -> EnsureResult:
        """Offer a new negotiation to the seller's agent."""
        negotiation = self.db.get(Negotiation, negotiation_id)
        if negotiation is None or negotiation.status != NegotiationStatus.ACTIVE.value:
            return EnsureResult(EnsureOutcome.SKIP)

        seller_agent = self._agent_for(negotiation.seller_id)
        if seller_agent is None or not seller_agent.is_active:
            self._expire_negotiation(negotiation)
            return EnsureResult(EnsureOutcome.NO_ACTIVE_AGENT)

        existing = self.store.find_open_event(seller_agent.id, negotiation_id=negotiation_id)
        if existing is not None:
            return EnsureResult(EnsureOutcome.ALREADY_EXISTS, existing.id)

        payload = NegotiationOfferPayload(
            negotiation_id=negotiation_id,
            listing=ListingSnapshot(
                title=negotiation.listing.title, price=negotiation.listing.price
            ),
            offer_price=negotiation.offer_price,
            buyer=user_snapshot(negotiation.buyer),
            message=message,
        )
        result = self._create_negotiation_event(
            negotiation, seller_agent, AgentEventType.NEGOTIATION_OFFER, payload
        )
        if result.created:
            buyer_agent = self._agent_for(negotiation.buyer_id)
            # The buyer made the opening move
            negotiation.last_actor_agent_id = buyer_agent.id if buyer_agent else None
            self.db.flush()
        return result

    def ensure_event_for_negotiation_turn(
        self,
        negotiation_id: str,
        counter_price: float,
        reason: str | None = None,
    ) -> EnsureResult:
        """Hand a counter-offer to whichever side did not act last."""
        negotiation = self.db.get(Negotiation, negotiation_id)
        if negotiation is None or negotiation.status != NegotiationStatus.ACTIVE.value:
            return EnsureResult(EnsureOutcome.SKIP)

        seller_agent = self._agent_for(negotiation.seller_id)
        buyer_agent = self._agent_for(negotiation.buyer_id)
        seller_acted_last = (
            seller_agent is not None
            and negotiation.last_actor_agent_id == seller_agent.id
        )
        target = buyer_agent if seller_acted_last else seller_agent

        if target is None or not target.is_active:
            self._expire_negotiation(negotiation)
            return EnsureResult(EnsureOutcome.NO_ACTIVE_AGENT)

        existing = self.store.find_open_event(target.id, negotiation_id=negotiation_id)
        if existing is not None:
            return EnsureResult(EnsureOutcome.ALREADY_EXISTS, existing.id)

        payload = NegotiationTurnPayload(
            negotiation_id=negotiation_id,
            listing=ListingSnapshot(
                title=negotiation.listing.title, price=negotiation.listing.price
            ),
            counter_price=counter_price,
            offer_price=negotiation.offer_price,
            reason=reason,
        )
        return self._create_negotiation_event(
            negotiation, target, AgentEventType.NEGOTIATION_TURN, payload
        )

    def _create_negotiation_event(
        self,
        negotiation: Negotiation,
        agent: Agent,
        event_type: AgentEventType,
        payload: NegotiationOfferPayload | NegotiationTurnPayload,
    ) -> EnsureResult:
        event, created = self.store.create_event(
            agent.id, event_type, payload, self.ttl, negotiation_id=negotiation.id
        )
        if not created:
            return EnsureResult(EnsureOutcome.ALREADY_EXISTS, event.id)

        conversation = self.store.find_negotiation_conversation(agent.id, negotiation.id)
        if conversation is None:
            peer = (
                negotiation.buyer_id
                if agent.user_id == negotiation.seller_id
                else negotiation.seller_id
            )
            conversation = self.store.create_conversation(
                agent.id, negotiation_id=negotiation.id, peer_user_id=peer
            )
        event.conversation_id = conversation.id
        self.db.flush()
        return EnsureResult(EnsureOutcome.CREATED, event.id)

    def _expire_negotiation(self, negotiation: Negotiation) -> None:
        """A negotiation cannot proceed one-sided: expire it, notify both."""
        negotiation.status = NegotiationStatus.EXPIRED.value
        negotiation.updated_at = to_iso(self.clock())
        title = negotiation.listing.title
        for user_id in (negotiation.buyer_id, negotiation.seller_id):
            self.notifications.notify_once(
                f"negotiation:{negotiation.id}:expired:{user_id}",
                user_id,
                NotificationType.NEGOTIATION_UPDATE,
                "Negotiation expired",
                f'Negotiation for "{title}" expired, both parties must have an active agent.',
                {"negotiationId": negotiation.id},
            )
        self.db.flush()
        logger.info("Negotiation %s expired: counterpart has no active agent", negotiation.id)
