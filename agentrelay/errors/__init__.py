"""Error handling framework for the agent relay.

Error categories:
- Auth: missing/malformed/unknown credential, suspended or unclaimed agent
- Validation: malformed body, invalid enum, missing decision fields
- Conflict: duplicate open event, already decided, duplicate request
- Temporal: expired event
"""

from agentrelay.errors.domain import (
    AgentAlreadyOwnedError,
    AlreadyClaimedError,
    AlreadyConnectedError,
    AlreadyDecidedError,
    AuthError,
    ConflictError,
    DomainError,
    DuplicateRequestError,
    ExpiredError,
    ForbiddenError,
    InvalidClaimTokenError,
    MalformedCredentialError,
    NoActiveAgentError,
    NotFoundError,
    PolicyViolationError,
    RateLimitedError,
    SuspendedAgentError,
    UnauthenticatedError,
    UnclaimedAgentError,
    ValidationError,
)

__all__ = [
    "DomainError",
    "NotFoundError",
    "ForbiddenError",
    "InvalidClaimTokenError",
    "ConflictError",
    "ExpiredError",
    "ValidationError",
    "PolicyViolationError",
    "NoActiveAgentError",
    "AlreadyDecidedError",
    "AlreadyClaimedError",
    "AgentAlreadyOwnedError",
    "AlreadyConnectedError",
    "DuplicateRequestError",
    # Auth
    "AuthError",
    "UnauthenticatedError",
    "MalformedCredentialError",
    "SuspendedAgentError",
    "UnclaimedAgentError",
    "RateLimitedError",
]
