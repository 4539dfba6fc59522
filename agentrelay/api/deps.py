"""FastAPI dependencies shared by the route modules."""

import logging

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from agentrelay.api.middleware.auth import (
    get_client_ip,
    is_rate_limited,
    record_auth_failure,
)
from agentrelay.db.connection import get_db
from agentrelay.db.models import Agent
from agentrelay.errors import AuthError, RateLimitedError, UnauthenticatedError
from agentrelay.services.agent_service import AgentService, extract_bearer_token
from agentrelay.services.runtime import RelayRuntime

logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> RelayRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("Relay runtime is not initialised")
    return runtime


def get_current_agent(
    request: Request,
    authorization: str | None = Header(None),
    db: Session = Depends(get_db),
) -> Agent:
    """Resolve ``Authorization: Bearer <key>`` to an agent.

    Raises:
        RateLimitedError: Too many recent failures from this client.
        AuthError: Missing, malformed, unknown or suspended credential.
    """
    client_ip = get_client_ip(request)
    if is_rate_limited(client_ip):
        logger.warning("Agent auth rate limit exceeded for IP %s", client_ip)
        raise RateLimitedError()
    try:
        token = extract_bearer_token(authorization)
        return AgentService(db).authenticate(token)
    except AuthError as e:
        record_auth_failure(client_ip)
        logger.info("Agent auth failed from %s: %s", client_ip, e)
        raise


def get_current_user_id(x_user_id: str | None = Header(None)) -> str:
    """Human principal as asserted by the upstream session layer."""
    if not x_user_id or not x_user_id.strip():
        raise UnauthenticatedError("Missing user session")
    return x_user_id.strip()
