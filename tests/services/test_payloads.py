"""Tests for typed event payloads."""

import json

import pytest

from agentrelay.db.models import AgentEventType
from agentrelay.errors import ValidationError
from agentrelay.services.payloads import (
    ListingSnapshot,
    NegotiationTurnPayload,
    dump_payload,
    parse_payload,
)


def test_stored_form_is_camel_case_and_untagged():
    payload = NegotiationTurnPayload(
        negotiation_id="neg-1",
        listing=ListingSnapshot(title="Leica M6", price=450.0),
        counter_price=425.0,
        offer_price=350.0,
    )

    stored = json.loads(dump_payload(payload))

    assert "type" not in stored
    assert stored["negotiationId"] == "neg-1"
    assert stored["counterPrice"] == 425.0
    assert stored["reason"] is None


def test_parse_selects_variant_by_event_type():
    parsed = parse_payload(
        AgentEventType.NEW_MESSAGE,
        {
            "chatThreadId": "thread-1",
            "senderUserId": "u-1",
            "sender": {"username": "alice", "displayName": "Alice"},
            "content": "hi",
        },
    )
    assert parsed.sender_user_id == "u-1"
    assert parsed.sender.interests == []


def test_payload_that_does_not_match_its_type_is_rejected():
    with pytest.raises(ValidationError):
        parse_payload("CONNECTION_REQUEST", {"chatThreadId": "thread-1"})
