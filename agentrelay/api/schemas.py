"""Pydantic schemas for API request/response validation.

JSON keys are camelCase on the wire (``counterPrice``, ``conversationId``)
and snake_case in Python; both spellings are accepted on input.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, model_validator
from pydantic.alias_generators import to_camel

from agentrelay.db.models import Agent, ConnectionCategory


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DecisionEnum(str, Enum):
    """Decisions an agent may take on an event."""

    ACCEPT = "ACCEPT"
    REJECT = "REJECT"
    ASK_MORE = "ASK_MORE"
    COUNTER = "COUNTER"


# Agent event schemas


class EventListResponse(_CamelModel):
    events: list[dict[str, Any]]


class DecideRequest(_CamelModel):
    """Request schema for deciding an event."""

    decision: DecisionEnum
    confidence: float | None = Field(None, ge=0, le=1)
    reason: str | None = Field(None, max_length=2000)
    counter_price: float | None = Field(None, gt=0)

    @model_validator(mode="after")
    def _counter_needs_price(self) -> "DecideRequest":
        if self.decision is DecisionEnum.COUNTER and self.counter_price is None:
            raise ValueError("COUNTER requires counterPrice")
        return self


class DecideResponse(_CamelModel):
    ok: bool = True
    warnings: list[str] = Field(default_factory=list)


class ReplyRequest(_CamelModel):
    content: str = Field(..., min_length=1, max_length=5000)


class ReplyResponse(_CamelModel):
    ok: bool = True
    conversation_id: str | None = None


# Agent identity schemas


class RegisterRequest(_CamelModel):
    name: str = Field(..., min_length=1, max_length=100)


class RegisterResponse(_CamelModel):
    """Returned once; the api key and claim token are not retrievable later."""

    agent_id: str
    name: str
    api_key: str
    api_key_prefix: str
    claim_token: str


class ClaimRequest(_CamelModel):
    claim_token: str = Field(..., min_length=1)


class GatewayRequest(_CamelModel):
    gateway_url: HttpUrl | None
    gateway_token: str | None = Field(None, max_length=500)
    webhook_enabled: bool


class AgentResponse(_CamelModel):
    id: str
    name: str
    status: str
    api_key_prefix: str
    user_id: str | None = None
    gateway_url: str | None = None
    webhook_enabled: bool = False
    last_seen_at: str | None = None
    created_at: str

    @classmethod
    def from_agent(cls, agent: Agent) -> "AgentResponse":
        return cls(
            id=agent.id,
            name=agent.name,
            status=agent.status,
            api_key_prefix=agent.api_key_prefix,
            user_id=agent.user_id,
            gateway_url=agent.gateway_url,
            webhook_enabled=agent.webhook_enabled,
            last_seen_at=agent.last_seen_at,
            created_at=agent.created_at,
        )


class MeResponse(_CamelModel):
    agent: AgentResponse
    owner: dict[str, Any]


# Agent action schemas


class ConnectRequest(_CamelModel):
    to_user_id: str = Field(..., min_length=1)
    category: ConnectionCategory = ConnectionCategory.OTHER
    intent: str = Field(..., min_length=1, max_length=1000)
    stake_near: float | None = Field(None, ge=0, le=1000)


class ConnectResponse(_CamelModel):
    ok: bool = True
    request_id: str
    stake_near: float | None = None


class MessageRequest(_CamelModel):
    user_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, max_length=5000)


class MessageResponse(_CamelModel):
    ok: bool = True
    event_id: str
    chat_thread_id: str


class ConversationListResponse(_CamelModel):
    conversations: list[dict[str, Any]]


# Marketplace schemas


class OfferRequest(_CamelModel):
    offer_price: float = Field(..., gt=0)
    message: str | None = Field(None, max_length=1000)


class OfferResponse(_CamelModel):
    ok: bool = True
    negotiation_id: str
    status: str
