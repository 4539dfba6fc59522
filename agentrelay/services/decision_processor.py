"""Applies an agent's decision on an event to the domain.

Guards run in a fixed order (not found, forbidden, already decided,
expired) and the decision body is checked against the event type before
anything is written. Negotiation decisions also need an open negotiation
and, to ACCEPT or COUNTER, a listing that is still for sale. The DECIDED
transition and the domain mutations commit together; stake settlement,
refunds and chat-channel provisioning run afterwards and only ever add
warnings.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from agentrelay.db.models import (
    AgentEvent,
    AgentEventStatus,
    AgentEventType,
    Connection,
    ConnectionRequest,
    ConnectionRequestStatus,
    ConversationStatus,
    Listing,
    ListingStatus,
    MessageRole,
    MessageThread,
    MessageThreadParticipant,
    Negotiation,
    NegotiationStatus,
    NotificationType,
    from_iso,
    to_iso,
    utc_now,
)
from agentrelay.errors import (
    AlreadyDecidedError,
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from agentrelay.services.chat_channels import ChatChannelProvisioner
from agentrelay.services.event_store import EventStore
from agentrelay.services.notification_service import NotificationService
from agentrelay.services.payment_service import PaymentRail, PaymentService
from agentrelay.services.task_queue import NEGOTIATION_TURN, TriggerSender

logger = logging.getLogger(__name__)

ASK_MORE_DEFAULT_BODY = "The agent has some questions before making a decision."


class Decision(str, Enum):
    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    ASK_MORE = "ASK_MORE"
    COUNTER = "COUNTER"


_ALLOWED: dict[str, set[Decision]] = {
    AgentEventType.CONNECTION_REQUEST.value: {Decision.ACCEPT, Decision.REJECT, Decision.ASK_MORE},
    AgentEventType.NEGOTIATION_OFFER.value: {Decision.ACCEPT, Decision.REJECT, Decision.COUNTER},
    AgentEventType.NEGOTIATION_TURN.value: {Decision.ACCEPT, Decision.REJECT, Decision.COUNTER},
    AgentEventType.NEW_MESSAGE.value: set(Decision),
}

_NEGOTIATION_TYPES = (AgentEventType.NEGOTIATION_OFFER.value, AgentEventType.NEGOTIATION_TURN.value)


@dataclass(frozen=True)
class DecisionInput:
    decision: Decision
    confidence: float | None = None
    reason: str | None = None
    counter_price: float | None = None

    def as_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {"decision": self.decision.value}
        if self.confidence is not None:
            record["confidence"] = self.confidence
        if self.reason is not None:
            record["reason"] = self.reason
        if self.counter_price is not None:
            record["counterPrice"] = self.counter_price
        return record


@dataclass
class DecisionResult:
    event_id: str
    decision: Decision
    warnings: list[str] = field(default_factory=list)


def validate_decision(event_type: str, decision: DecisionInput) -> None:
    """Reject decisions that do not apply to the event type.

    Raises:
        ValidationError: Wrong decision for the type, out-of-range
            confidence, or COUNTER without a counter price.
    """
    if decision.decision not in _ALLOWED.get(event_type, set()):
        raise ValidationError(f"Decision {decision.decision.value} is not valid for {event_type}")
    if decision.confidence is not None and not 0 <= decision.confidence <= 1:
        raise ValidationError("Confidence must be between 0 and 1")
    if decision.reason is not None and len(decision.reason) > 2000:
        raise ValidationError("Reason must be at most 2000 characters")
    if decision.decision is Decision.COUNTER and decision.counter_price is None:
        raise ValidationError("COUNTER requires counterPrice")


class DecisionProcessor:
    """Completes ``decide(event_id, agent_id, decision)``. Commits itself."""

    def __init__(
        self,
        db: Session,
        queue: TriggerSender,
        rail: PaymentRail,
        chat_channels: ChatChannelProvisioner,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.queue = queue
        self.rail = rail
        self.chat_channels = chat_channels
        self.clock = clock
        self.store = EventStore(db, clock=clock)
        self.notifications = NotificationService(db)

    def load_for_agent(self, event_id: str, agent_id: str) -> AgentEvent:
        """Fetch an event, checking ownership and the expiry window.

        Raises:
            NotFoundError, ForbiddenError, AlreadyDecidedError, ExpiredError
        """
        event = self.store.get_event(event_id)
        if event is None:
            raise NotFoundError("Event", event_id)
        if event.agent_id != agent_id:
            raise ForbiddenError("Forbidden")
        if event.status == AgentEventStatus.DECIDED.value:
            raise AlreadyDecidedError(event_id)
        self.check_not_expired(event)
        return event

    def check_negotiation_open(self, event: AgentEvent, decision: DecisionInput) -> None:
        """Refuse decisions on a closed negotiation or a listing already sold.

        Raises:
            ConflictError
        """
        if event.type not in _NEGOTIATION_TYPES or not event.negotiation_id:
            return
        negotiation = self.db.get(Negotiation, event.negotiation_id)
        if negotiation is None:
            return
        if negotiation.status != NegotiationStatus.ACTIVE.value:
            raise ConflictError("Negotiation is no longer active")
        if (
            decision.decision in (Decision.ACCEPT, Decision.COUNTER)
            and negotiation.listing.status != ListingStatus.ACTIVE.value
        ):
            raise ConflictError("Listing is no longer available")

    def check_not_expired(self, event: AgentEvent) -> None:
        if event.status == AgentEventStatus.EXPIRED.value or self.clock() > from_iso(event.expires_at):
            raise ExpiredError()

    def decide(self, event_id: str, agent_id: str, decision: DecisionInput) -> DecisionResult:
        event = self.load_for_agent(event_id, agent_id)
        validate_decision(event.type, decision)
        self.check_negotiation_open(event, decision)

        if not self.store.mark_decided(event, decision.as_record()):
            # Lost a race with another decision or the reaper
            self.db.rollback()
            self.db.refresh(event)
            if event.status == AgentEventStatus.DECIDED.value:
                raise AlreadyDecidedError(event_id)
            raise ExpiredError()

        # ASK_MORE and COUNTER leave the conversation open for further turns
        if (
            decision.decision in (Decision.ACCEPT, Decision.REJECT)
            and event.type != AgentEventType.NEW_MESSAGE.value
        ):
            self.store.close_conversation(
                event.conversation_id,
                ConversationStatus.DECIDED,
                decision=decision.decision.value,
                confidence=decision.confidence,
                reason=decision.reason,
            )

        result = DecisionResult(event_id=event_id, decision=decision.decision)
        followups: list[Callable[[], str | None]] = []

        if event.type == AgentEventType.CONNECTION_REQUEST.value and event.connection_request_id:
            followups = self._apply_connection_decision(event, decision)
        elif event.type in _NEGOTIATION_TYPES and event.negotiation_id:
            try:
                followups = self._apply_negotiation_decision(event, decision)
            except ConflictError:
                # Another buyer won the listing after the guard above
                self.db.rollback()
                raise

        self.db.commit()
        logger.info("Event %s decided %s by agent %s", event_id, decision.decision.value, agent_id)

        for followup in followups:
            warning = followup()
            if warning:
                result.warnings.append(warning)
        return result

    # =========================================================================
    # Connection requests
    # =========================================================================

    def _apply_connection_decision(
        self, event: AgentEvent, decision: DecisionInput
    ) -> list[Callable[[], str | None]]:
        request = self.db.get(ConnectionRequest, event.connection_request_id)
        if request is None:
            return []
        request_id = request.id
        meta = {"requestId": request_id}

        if decision.decision is Decision.ACCEPT:
            request.status = ConnectionRequestStatus.ACCEPTED.value
            connection = self._ensure_connection(request.from_user_id, request.to_user_id)
            self.notifications.notify(
                request.from_user_id,
                NotificationType.CONNECTION_ACCEPTED,
                "Connection accepted!",
                decision.reason or "Your connection request was accepted.",
                meta,
            )
            self.notifications.notify(
                request.to_user_id,
                NotificationType.AGENT_DECISION,
                "Agent accepted a connection request",
                decision.reason or "Connection accepted.",
                meta,
            )
            connection_id = connection.id
            return [
                lambda: self._settle(request_id),
                lambda: self._provision_channel(connection_id),
            ]

        if decision.decision is Decision.REJECT:
            request.status = ConnectionRequestStatus.REJECTED.value
            self.notifications.notify(
                request.from_user_id,
                NotificationType.CONNECTION_REJECTED,
                "Connection declined",
                decision.reason or "The user's agent declined your request.",
                meta,
            )
            self.notifications.notify(
                request.to_user_id,
                NotificationType.AGENT_DECISION,
                "Agent rejected a connection request",
                decision.reason or "Connection rejected.",
                meta,
            )
            return [lambda: self._refund(request_id)]

        # ASK_MORE
        request.status = ConnectionRequestStatus.IN_CONVERSATION.value
        if decision.reason:
            conversation = self.store.create_conversation(
                event.agent_id,
                connection_request_id=request.id,
                peer_user_id=request.from_user_id,
            )
            self.store.append_message(conversation, MessageRole.AGENT, decision.reason)
        self.notifications.notify(
            request.from_user_id,
            NotificationType.AGENT_DECISION,
            "Agent wants to know more",
            decision.reason or ASK_MORE_DEFAULT_BODY,
            meta,
        )
        return []

    def _ensure_connection(self, user_a_id: str, user_b_id: str) -> Connection:
        existing = (
            self.db.query(Connection)
            .filter(
                or_(
                    (Connection.user_a_id == user_a_id) & (Connection.user_b_id == user_b_id),
                    (Connection.user_a_id == user_b_id) & (Connection.user_b_id == user_a_id),
                )
            )
            .first()
        )
        if existing is not None:
            return existing

        connection = Connection(user_a_id=user_a_id, user_b_id=user_b_id)
        self.db.add(connection)
        self.db.flush()
        thread = MessageThread(connection_id=connection.id)
        thread.participants = [
            MessageThreadParticipant(user_id=user_a_id),
            MessageThreadParticipant(user_id=user_b_id),
        ]
        self.db.add(thread)
        self.db.flush()
        return connection

    def _settle(self, request_id: str) -> str | None:
        try:
            PaymentService(self.db, self.rail).settle(request_id)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.warning("Stake settlement for request %s failed: %s", request_id, e)
            return f"Stake settlement failed: {e}"
        return None

    def _refund(self, request_id: str) -> str | None:
        try:
            PaymentService(self.db, self.rail).refund(request_id)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.warning("Stake refund for request %s failed: %s", request_id, e)
            return f"Stake refund failed: {e}"
        return None

    def _provision_channel(self, connection_id: str) -> str | None:
        try:
            self.chat_channels.ensure_dm_channel(connection_id)
        except Exception as e:
            logger.warning(
                "DM channel for connection %s not created (will be created lazily): %s",
                connection_id, e,
            )
        return None

    # =========================================================================
    # Negotiations
    # =========================================================================

    def _apply_negotiation_decision(
        self, event: AgentEvent, decision: DecisionInput
    ) -> list[Callable[[], str | None]]:
        negotiation = self.db.get(Negotiation, event.negotiation_id)
        if negotiation is None:
            return []
        now = to_iso(self.clock())
        # Same transaction as the DECIDED transition
        negotiation.last_actor_agent_id = event.agent_id
        negotiation.updated_at = now

        if decision.decision is Decision.COUNTER:
            data = {
                "negotiationId": negotiation.id,
                "counterPrice": decision.counter_price,
                "reason": decision.reason,
            }
            return [lambda: self._send_turn(data)]

        title = negotiation.listing.title
        meta = {"negotiationId": negotiation.id}
        if decision.decision is Decision.ACCEPT:
            # Conditional writes so only one buyer can win the listing
            sold = (
                self.db.query(Listing)
                .filter(
                    Listing.id == negotiation.listing_id,
                    Listing.status == ListingStatus.ACTIVE.value,
                )
                .update({Listing.status: ListingStatus.SOLD.value}, synchronize_session="fetch")
            )
            if not sold:
                raise ConflictError("Listing is no longer available")
            self._close_negotiation(negotiation, NegotiationStatus.ACCEPTED, now)
            title_text, body = "Offer accepted", f'The deal for "{title}" was accepted.'
        else:
            self._close_negotiation(negotiation, NegotiationStatus.REJECTED, now)
            title_text, body = "Offer rejected", f'The offer for "{title}" was rejected.'
        if decision.reason:
            body = f"{body} {decision.reason}"

        for user_id in (negotiation.buyer_id, negotiation.seller_id):
            self.notifications.notify(
                user_id, NotificationType.NEGOTIATION_UPDATE, title_text, body, meta
            )
        return []

    def _close_negotiation(
        self, negotiation: Negotiation, status: NegotiationStatus, now: str
    ) -> None:
        closed = (
            self.db.query(Negotiation)
            .filter(
                Negotiation.id == negotiation.id,
                Negotiation.status == NegotiationStatus.ACTIVE.value,
            )
            .update(
                {Negotiation.status: status.value, Negotiation.updated_at: now},
                synchronize_session="fetch",
            )
        )
        if not closed:
            raise ConflictError("Negotiation is no longer active")

    def _send_turn(self, data: dict[str, Any]) -> str | None:
        self.queue.send(NEGOTIATION_TURN, data)
        return None
