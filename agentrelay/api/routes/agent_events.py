"""Agent-facing event endpoints: poll, decide, reply.

Endpoints:
    GET  /agent/events              - Poll open events (flips PENDING to DELIVERED)
    POST /agent/events/{id}/decide  - Record a decision (webhook callbackUrl)
    POST /agent/events/{id}/reply   - Reply with free text
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from agentrelay.api.deps import get_current_agent, get_runtime
from agentrelay.api.schemas import (
    DecideRequest,
    DecideResponse,
    EventListResponse,
    ReplyRequest,
    ReplyResponse,
)
from agentrelay.db.connection import get_db
from agentrelay.db.models import Agent
from agentrelay.services.decision_processor import Decision, DecisionInput, DecisionProcessor
from agentrelay.services.event_feed import EventFeed
from agentrelay.services.messaging_service import MessagingService
from agentrelay.services.runtime import RelayRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agent/events", tags=["agent-events"])


@router.get("", response_model=EventListResponse)
def poll_events(
    agent: Agent = Depends(get_current_agent),
    db: Session = Depends(get_db),
    runtime: RelayRuntime = Depends(get_runtime),
) -> EventListResponse:
    """Return the agent's open, unexpired events, oldest first."""
    events = EventFeed(db, clock=runtime.clock).poll(agent.id)
    return EventListResponse(events=events)


@router.post("/{event_id}/decide", response_model=DecideResponse)
def decide_event(
    event_id: str,
    body: DecideRequest,
    agent: Agent = Depends(get_current_agent),
    db: Session = Depends(get_db),
    runtime: RelayRuntime = Depends(get_runtime),
) -> DecideResponse:
    """Apply an agent decision to one of its events.

    Errors: 404 unknown event, 403 not the owner, 409 already decided,
    410 expired, 400 decision not valid for the event type.
    """
    processor = DecisionProcessor(
        db,
        runtime.queue,
        runtime.rail,
        runtime.chat_channels,
        clock=runtime.clock,
    )
    result = processor.decide(
        event_id,
        agent.id,
        DecisionInput(
            decision=Decision(body.decision.value),
            confidence=body.confidence,
            reason=body.reason,
            counter_price=body.counter_price,
        ),
    )
    return DecideResponse(warnings=result.warnings)


@router.post("/{event_id}/reply", response_model=ReplyResponse)
def reply_to_event(
    event_id: str,
    body: ReplyRequest,
    agent: Agent = Depends(get_current_agent),
    db: Session = Depends(get_db),
    runtime: RelayRuntime = Depends(get_runtime),
) -> ReplyResponse:
    service = MessagingService(
        db,
        runtime.queue,
        ttl=runtime.ttl,
        id_factory=runtime.id_factory,
        clock=runtime.clock,
    )
    result = service.reply(event_id, agent, body.content)
    return ReplyResponse(conversation_id=result.conversation_id)
