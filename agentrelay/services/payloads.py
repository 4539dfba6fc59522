"""Typed event payloads, one shape per AgentEventType.

Payloads are a tagged union keyed by the owning event's ``type`` column.
They are validated when an event is built and again when a stored payload
is consumed. On the wire (database JSON, poll responses, webhook envelopes)
keys are camelCase and the tag is omitted, since the event carries it.

Example:
    payload = ConnectionRequestPayload(request_id=req.id, ...)
    event.payload_json = dump_payload(payload)
    ...
    parsed = parse_payload(event.type, event.payload)
"""

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from agentrelay.db.models import AgentEventType
from agentrelay.errors import ValidationError


class _PayloadModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserSnapshot(_PayloadModel):
    """Public profile fields of the counterpart, frozen at event creation."""

    username: str
    display_name: str
    bio: str = ""
    interests: list[str] = Field(default_factory=list)


class ListingSnapshot(_PayloadModel):
    title: str
    price: float


class ConnectionRequestPayload(_PayloadModel):
    type: Literal["CONNECTION_REQUEST"] = "CONNECTION_REQUEST"
    request_id: str
    from_user: UserSnapshot
    category: str
    intent: str
    stake_amount: float | None = None


class NegotiationOfferPayload(_PayloadModel):
    type: Literal["NEGOTIATION_OFFER"] = "NEGOTIATION_OFFER"
    negotiation_id: str
    listing: ListingSnapshot
    offer_price: float
    buyer: UserSnapshot
    message: str | None = None


class NegotiationTurnPayload(_PayloadModel):
    type: Literal["NEGOTIATION_TURN"] = "NEGOTIATION_TURN"
    negotiation_id: str
    listing: ListingSnapshot
    counter_price: float
    offer_price: float
    reason: str | None = None


class NewMessagePayload(_PayloadModel):
    type: Literal["NEW_MESSAGE"] = "NEW_MESSAGE"
    chat_thread_id: str
    sender_user_id: str
    sender: UserSnapshot
    content: str


EventPayload = Annotated[
    Union[
        ConnectionRequestPayload,
        NegotiationOfferPayload,
        NegotiationTurnPayload,
        NewMessagePayload,
    ],
    Field(discriminator="type"),
]

_payload_adapter: TypeAdapter[EventPayload] = TypeAdapter(EventPayload)


def dump_payload(payload: BaseModel) -> str:
    """Serialize a payload model to its stored JSON form (camelCase, untagged)."""
    return json.dumps(payload.model_dump(mode="json", by_alias=True, exclude={"type"}))


def parse_payload(event_type: str | AgentEventType, data: dict[str, Any]) -> EventPayload:
    """Validate stored payload data against the variant for ``event_type``.

    Raises:
        ValidationError: If the payload does not match its variant.
    """
    tag = event_type.value if isinstance(event_type, AgentEventType) else event_type
    try:
        return _payload_adapter.validate_python({**data, "type": tag})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid event payload for {tag}") from e
