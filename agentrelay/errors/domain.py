"""Typed domain exceptions for API error mapping.

Each exception carries the HTTP status it maps to, so routes and the
application-level handler never match on message strings.

Usage:
    # In service layer
    raise NotFoundError("Event", event_id)

    # In the API layer (registered once in main.py)
    except DomainError as e:
        return JSONResponse({"error": str(e)}, status_code=e.status_code)
"""


class DomainError(Exception):
    """Base exception for all domain errors."""

    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)


class NotFoundError(DomainError):
    """Resource was not found. Maps to HTTP 404."""

    status_code = 404

    def __init__(self, resource_type: str, identifier: str) -> None:
        super().__init__(f"{resource_type} '{identifier}' not found")
        self.resource_type = resource_type
        self.identifier = identifier


class InvalidClaimTokenError(NotFoundError):
    """Claim token does not match any agent. Maps to HTTP 404."""

    def __init__(self) -> None:
        DomainError.__init__(self, "Invalid claim token")
        self.resource_type = "ClaimToken"
        self.identifier = ""


class ForbiddenError(DomainError):
    """Caller does not own the resource. Maps to HTTP 403."""

    status_code = 403


class ConflictError(DomainError):
    """Resource conflict (e.g., duplicate). Maps to HTTP 409."""

    status_code = 409


class ExpiredError(DomainError):
    """Decision window has closed. Maps to HTTP 410."""

    status_code = 410

    def __init__(self, message: str = "Event expired") -> None:
        super().__init__(message)


class ValidationError(DomainError):
    """Validation failure. Maps to HTTP 400."""

    status_code = 400


class PolicyViolationError(DomainError):
    """Request violates the counterpart's payment policy. Maps to HTTP 422."""

    status_code = 422


class NoActiveAgentError(DomainError):
    """Counterpart has no active agent to route to. Maps to HTTP 422."""

    status_code = 422

    def __init__(self, message: str = "Target user has no active agent") -> None:
        super().__init__(message)


class AlreadyDecidedError(ConflictError):
    """Event is already DECIDED."""

    def __init__(self, event_id: str) -> None:
        super().__init__("Event already decided")
        self.event_id = event_id


class AlreadyClaimedError(ConflictError):
    def __init__(self) -> None:
        super().__init__("Agent already claimed")


class AgentAlreadyOwnedError(ConflictError):
    def __init__(self) -> None:
        super().__init__("User already has a connected agent")


class AlreadyConnectedError(ConflictError):
    def __init__(self) -> None:
        super().__init__("Already connected")


class DuplicateRequestError(ConflictError):
    def __init__(self) -> None:
        super().__init__("Request already sent")


# Authentication


class AuthError(DomainError):
    """Base for credential failures. Never retried automatically."""

    status_code = 401


class UnauthenticatedError(AuthError):
    """Missing header or unknown credential."""

    def __init__(self, message: str = "Invalid API key") -> None:
        super().__init__(message)


class MalformedCredentialError(AuthError):
    """Credential does not match the expected format; rejected before lookup."""

    def __init__(self) -> None:
        super().__init__("Invalid API key format")


class SuspendedAgentError(AuthError):
    status_code = 403

    def __init__(self) -> None:
        super().__init__("Agent is suspended")


class UnclaimedAgentError(AuthError):
    """Operation needs an agent with a human owner."""

    status_code = 403

    def __init__(self, message: str = "Agent must be claimed") -> None:
        super().__init__(message)


class RateLimitedError(AuthError):
    status_code = 429

    def __init__(self) -> None:
        super().__init__("Too many authentication failures. Try again later.")
