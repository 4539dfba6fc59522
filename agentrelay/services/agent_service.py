"""Agent identity: credentials, authentication, claim and gateway settings.

Credentials are ``clankr_`` followed by 64 lowercase hex characters. Only a
SHA-256 hash and a short display prefix are stored; the raw key is returned
once at registration.

Example:
    svc = AgentService(db)
    registered = svc.register("my-agent")      # raw key + claim token
    agent = svc.authenticate(registered.api_key)
"""

import hashlib
import logging
import re
import secrets
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from agentrelay.db.models import Agent, AgentStatus, User, utc_now_iso
from agentrelay.errors import (
    AgentAlreadyOwnedError,
    AlreadyClaimedError,
    InvalidClaimTokenError,
    MalformedCredentialError,
    NotFoundError,
    SuspendedAgentError,
    UnauthenticatedError,
    UnclaimedAgentError,
)

logger = logging.getLogger(__name__)

API_KEY_PREFIX = "clankr_"
CLAIM_TOKEN_PREFIX = "clankr_claim_"
KEY_BYTE_LENGTH = 32  # 64 hex chars

_API_KEY_PATTERN = re.compile(
    rf"^{re.escape(API_KEY_PREFIX)}[0-9a-f]{{{KEY_BYTE_LENGTH * 2}}}$"
)


@dataclass(frozen=True)
class GeneratedKey:
    key: str
    hash: str
    prefix: str


@dataclass(frozen=True)
class RegisteredAgent:
    """Registration result. The raw api_key is never retrievable again."""

    agent: Agent
    api_key: str
    claim_token: str


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def generate_api_key() -> GeneratedKey:
    raw = secrets.token_hex(KEY_BYTE_LENGTH)
    key = f"{API_KEY_PREFIX}{raw}"
    return GeneratedKey(key=key, hash=hash_api_key(key), prefix=f"{API_KEY_PREFIX}{raw[:4]}")


def generate_claim_token() -> str:
    return f"{CLAIM_TOKEN_PREFIX}{secrets.token_hex(KEY_BYTE_LENGTH)}"


def validate_api_key_format(key: str) -> bool:
    """Return True if ``key`` has the fixed prefix and a 64-char hex body."""
    return bool(_API_KEY_PATTERN.match(key))


def extract_bearer_token(authorization: str | None) -> str:
    """Pull the token out of an ``Authorization: Bearer <token>`` header.

    Raises:
        UnauthenticatedError: If the header is missing or not a bearer header.
    """
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthenticatedError("Missing or invalid Authorization header")
    return authorization[len("Bearer "):].strip()


class AgentService:
    """Registration, authentication and ownership of external agents.

    Methods that mutate ownership commit themselves; they are complete
    user-facing operations.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def register(self, name: str) -> RegisteredAgent:
        """Create an UNCLAIMED agent with a fresh credential and claim token."""
        generated = generate_api_key()
        claim_token = generate_claim_token()
        agent = Agent(
            name=name,
            api_key_hash=generated.hash,
            api_key_prefix=generated.prefix,
            claim_token=claim_token,
            status=AgentStatus.UNCLAIMED.value,
        )
        self.db.add(agent)
        self.db.commit()
        self.db.refresh(agent)
        logger.info("Registered agent %s (%s)", agent.id, agent.api_key_prefix)
        return RegisteredAgent(agent=agent, api_key=generated.key, claim_token=claim_token)

    def authenticate(self, credential: str) -> Agent:
        """Resolve a raw credential to its agent.

        Format is checked before any lookup. Updates last_seen_at on success
        as a best-effort side effect.

        Raises:
            MalformedCredentialError: Wrong prefix/length/alphabet.
            UnauthenticatedError: No agent holds this credential.
            SuspendedAgentError: Agent exists but is suspended.
        """
        if not validate_api_key_format(credential):
            raise MalformedCredentialError()

        agent = (
            self.db.query(Agent)
            .filter(Agent.api_key_hash == hash_api_key(credential))
            .first()
        )
        if agent is None:
            raise UnauthenticatedError()
        if agent.status == AgentStatus.SUSPENDED.value:
            raise SuspendedAgentError()

        self._touch(agent)
        return agent

    def _touch(self, agent: Agent) -> None:
        try:
            agent.last_seen_at = utc_now_iso()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Failed to update last_seen_at for agent %s: %s", agent.id, e)

    def get_for_user(self, user_id: str) -> Agent | None:
        return self.db.query(Agent).filter(Agent.user_id == user_id).first()

    def get_active_for_user(self, user_id: str) -> Agent | None:
        return (
            self.db.query(Agent)
            .filter(Agent.user_id == user_id, Agent.status == AgentStatus.ACTIVE.value)
            .first()
        )

    def claim(self, user_id: str, claim_token: str) -> Agent:
        """Attach an unclaimed agent to a human user.

        Raises:
            NotFoundError: Unknown user or invalid claim token.
            AgentAlreadyOwnedError: The user already owns an agent.
            AlreadyClaimedError: The agent already has an owner.
        """
        if self.db.get(User, user_id) is None:
            raise NotFoundError("User", user_id)
        if self.get_for_user(user_id) is not None:
            raise AgentAlreadyOwnedError()

        agent = self.db.query(Agent).filter(Agent.claim_token == claim_token).first()
        if agent is None:
            raise InvalidClaimTokenError()
        if agent.status != AgentStatus.UNCLAIMED.value:
            raise AlreadyClaimedError()

        agent.user_id = user_id
        agent.status = AgentStatus.ACTIVE.value
        agent.claim_token = None
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race on the one-agent-per-user constraint
            self.db.rollback()
            raise AgentAlreadyOwnedError() from None
        self.db.refresh(agent)
        logger.info("Agent %s claimed by user %s", agent.id, user_id)
        return agent

    def update_gateway(
        self,
        user_id: str,
        gateway_url: str | None,
        gateway_token: str | None,
        webhook_enabled: bool,
    ) -> Agent:
        agent = self.get_for_user(user_id)
        if agent is None:
            raise NotFoundError("Agent for user", user_id)
        agent.gateway_url = gateway_url.rstrip("/") if gateway_url else None
        agent.gateway_token = gateway_token
        agent.webhook_enabled = webhook_enabled
        self.db.commit()
        self.db.refresh(agent)
        return agent

    def disconnect(self, user_id: str) -> Agent:
        """Detach the user's agent and suspend it."""
        agent = self.get_for_user(user_id)
        if agent is None:
            raise NotFoundError("Agent for user", user_id)
        agent.user_id = None
        agent.status = AgentStatus.SUSPENDED.value
        self.db.commit()
        self.db.refresh(agent)
        logger.info("Agent %s disconnected and suspended", agent.id)
        return agent


def require_claimed(agent: Agent, message: str = "Agent must be claimed") -> str:
    """Return the agent's owner id or raise UnclaimedAgentError."""
    if not agent.user_id:
        raise UnclaimedAgentError(message)
    return agent.user_id
