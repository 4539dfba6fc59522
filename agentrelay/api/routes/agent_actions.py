"""Actions an agent takes on its owner's behalf, plus conversation history.

Endpoints:
    POST /agent/connect               - Send a connection request
    POST /agent/message               - Message a connected user's agent
    GET  /agent/conversations         - List conversations
    GET  /agent/conversations/{id}    - One conversation with its messages
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from agentrelay.api.deps import get_current_agent, get_runtime
from agentrelay.api.schemas import (
    ConnectRequest,
    ConnectResponse,
    ConversationListResponse,
    MessageRequest,
    MessageResponse,
)
from agentrelay.db.connection import get_db
from agentrelay.db.models import Agent
from agentrelay.services.connection_service import ConnectionService
from agentrelay.services.event_feed import EventFeed
from agentrelay.services.messaging_service import MessagingService
from agentrelay.services.runtime import RelayRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agent", tags=["agent-actions"])


@router.post("/connect", response_model=ConnectResponse, status_code=201)
def connect(
    body: ConnectRequest,
    agent: Agent = Depends(get_current_agent),
    db: Session = Depends(get_db),
    runtime: RelayRuntime = Depends(get_runtime),
) -> ConnectResponse:
    """Send a connection request to another user.

    Errors: 403 unclaimed agent, 400 self-connect, 404 unknown user,
    409 already connected or duplicate request, 422 stake policy.
    """
    service = ConnectionService(db, runtime.queue, runtime.rail, runtime.event_factory(db))
    result = service.connect(
        agent,
        body.to_user_id,
        body.intent.strip(),
        category=body.category,
        stake=body.stake_near,
    )
    return ConnectResponse(request_id=result.request_id, stake_near=result.stake_amount)


@router.post("/message", response_model=MessageResponse, status_code=201)
def send_message(
    body: MessageRequest,
    agent: Agent = Depends(get_current_agent),
    db: Session = Depends(get_db),
    runtime: RelayRuntime = Depends(get_runtime),
) -> MessageResponse:
    service = MessagingService(
        db,
        runtime.queue,
        ttl=runtime.ttl,
        id_factory=runtime.id_factory,
        clock=runtime.clock,
    )
    routed = service.send_message(agent, body.user_id, body.content)
    return MessageResponse(event_id=routed.event_id, chat_thread_id=routed.chat_thread_id)


@router.get("/conversations", response_model=ConversationListResponse)
def list_conversations(
    agent: Agent = Depends(get_current_agent),
    db: Session = Depends(get_db),
) -> ConversationListResponse:
    return ConversationListResponse(conversations=EventFeed(db).conversations(agent.id))


@router.get("/conversations/{conversation_id}")
def get_conversation(
    conversation_id: str,
    agent: Agent = Depends(get_current_agent),
    db: Session = Depends(get_db),
) -> dict:
    return EventFeed(db).conversation(agent.id, conversation_id)
