"""Agent identity: registration, claiming, gateway settings, disconnect.

Registration and ``/agent/me`` are agent-facing. Claim, gateway and
disconnect act for the human owner named by the ``X-User-Id`` header.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from agentrelay.api.deps import get_current_agent, get_current_user_id
from agentrelay.api.schemas import (
    AgentResponse,
    ClaimRequest,
    GatewayRequest,
    MeResponse,
    RegisterRequest,
    RegisterResponse,
)
from agentrelay.db.connection import get_db
from agentrelay.db.models import Agent, User
from agentrelay.errors import NotFoundError
from agentrelay.services.agent_service import AgentService, require_claimed

logger = logging.getLogger(__name__)

router = APIRouter(tags=["agents"])


def _get_service(db: Session = Depends(get_db)) -> AgentService:
    """Dependency injector for AgentService."""
    return AgentService(db)


@router.post("/agents/register", response_model=RegisterResponse, status_code=201)
def register_agent(
    body: RegisterRequest,
    service: AgentService = Depends(_get_service),
) -> RegisterResponse:
    """Create an unclaimed agent.

    The raw API key and claim token appear in this response only.
    """
    registered = service.register(body.name.strip())
    return RegisterResponse(
        agent_id=registered.agent.id,
        name=registered.agent.name,
        api_key=registered.api_key,
        api_key_prefix=registered.agent.api_key_prefix,
        claim_token=registered.claim_token,
    )


@router.post("/agents/claim", response_model=AgentResponse)
def claim_agent(
    body: ClaimRequest,
    user_id: str = Depends(get_current_user_id),
    service: AgentService = Depends(_get_service),
) -> AgentResponse:
    agent = service.claim(user_id, body.claim_token.strip())
    return AgentResponse.from_agent(agent)


@router.put("/agent/gateway", response_model=AgentResponse)
def update_gateway(
    body: GatewayRequest,
    user_id: str = Depends(get_current_user_id),
    service: AgentService = Depends(_get_service),
) -> AgentResponse:
    agent = service.update_gateway(
        user_id,
        str(body.gateway_url) if body.gateway_url is not None else None,
        body.gateway_token or None,
        body.webhook_enabled,
    )
    return AgentResponse.from_agent(agent)


@router.delete("/agent", response_model=AgentResponse)
def disconnect_agent(
    user_id: str = Depends(get_current_user_id),
    service: AgentService = Depends(_get_service),
) -> AgentResponse:
    """Detach the user's agent and suspend it."""
    return AgentResponse.from_agent(service.disconnect(user_id))


@router.get("/agent/me", response_model=MeResponse)
def whoami(
    agent: Agent = Depends(get_current_agent),
    db: Session = Depends(get_db),
) -> MeResponse:
    owner_id = require_claimed(agent)
    owner = db.get(User, owner_id)
    if owner is None:
        raise NotFoundError("User", owner_id)
    return MeResponse(
        agent=AgentResponse.from_agent(agent),
        owner={"id": owner.id, **owner.public_profile()},
    )
