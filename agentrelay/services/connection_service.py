"""Agent-initiated connection requests."""

import logging
from dataclasses import dataclass

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agentrelay.db.models import (
    Agent,
    Connection,
    ConnectionCategory,
    ConnectionRequest,
    Profile,
    User,
)
from agentrelay.errors import (
    AlreadyConnectedError,
    DuplicateRequestError,
    NotFoundError,
    ValidationError,
)
from agentrelay.services.agent_service import require_claimed
from agentrelay.services.event_factory import EnsureResult, EventFactory
from agentrelay.services.payment_service import PaymentRail, PaymentService
from agentrelay.services.task_queue import (
    CONNECTION_REQUEST_CREATED,
    EVENT_CREATED,
    TriggerSender,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectResult:
    request_id: str
    stake_amount: float | None
    event: EnsureResult


class ConnectionService:
    def __init__(
        self,
        db: Session,
        queue: TriggerSender,
        rail: PaymentRail,
        factory: EventFactory,
    ) -> None:
        self.db = db
        self.queue = queue
        self.payments = PaymentService(db, rail)
        self.factory = factory

    def connect(
        self,
        agent: Agent,
        to_user_id: str,
        intent: str,
        category: ConnectionCategory = ConnectionCategory.OTHER,
        stake: float | None = None,
    ) -> ConnectResult:
        """Send a connection request from the agent's owner to another user.

        The recipient's agent event is created synchronously so it can be
        polled immediately; ``connection/request.created`` is still fired
        as an idempotent fallback.
        """
        from_user_id = require_claimed(agent, "Agent must be claimed to send connection requests")
        if to_user_id == from_user_id:
            raise ValidationError("Cannot connect with yourself")
        if self.db.get(User, to_user_id) is None:
            raise NotFoundError("User", to_user_id)

        connected = (
            self.db.query(Connection)
            .filter(
                or_(
                    (Connection.user_a_id == from_user_id) & (Connection.user_b_id == to_user_id),
                    (Connection.user_a_id == to_user_id) & (Connection.user_b_id == from_user_id),
                )
            )
            .first()
        )
        if connected is not None:
            raise AlreadyConnectedError()

        duplicate = (
            self.db.query(ConnectionRequest)
            .filter(
                ConnectionRequest.from_user_id == from_user_id,
                ConnectionRequest.to_user_id == to_user_id,
            )
            .first()
        )
        if duplicate is not None:
            raise DuplicateRequestError()

        self.payments.validate_stake(to_user_id, stake)

        request = ConnectionRequest(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            category=category.value,
            intent=intent,
            stake_amount=stake,
        )
        try:
            with self.db.begin_nested():
                self.db.add(request)
                self.db.flush()
        except IntegrityError:
            raise DuplicateRequestError() from None

        if stake and stake > 0:
            self._create_stake(request, from_user_id, to_user_id, stake)

        result = self.factory.ensure_event_for_connection_request(request.id)
        self.db.commit()
        logger.info(
            "Connection request %s from %s to %s (%s)",
            request.id, from_user_id, to_user_id, result.outcome.value,
        )

        self.queue.send(CONNECTION_REQUEST_CREATED, {"requestId": request.id})
        if result.created:
            self.queue.send(EVENT_CREATED, {"eventId": result.event_id})
        return ConnectResult(request_id=request.id, stake_amount=stake, event=result)

    def _create_stake(
        self, request: ConnectionRequest, from_user_id: str, to_user_id: str, stake: float
    ) -> None:
        accounts = dict(
            self.db.query(Profile.user_id, Profile.payment_account_id)
            .filter(Profile.user_id.in_([from_user_id, to_user_id]))
            .all()
        )
        sender_account = accounts.get(from_user_id)
        recipient_account = accounts.get(to_user_id)
        if sender_account and recipient_account:
            self.payments.create_stake(request.id, sender_account, recipient_account, stake)
        else:
            logger.info("Stake on request %s not escrowed: missing payment account", request.id)
