"""Tests for event expiry and its compensations."""

import pytest

from agentrelay.db.models import (
    AgentConversation,
    AgentEvent,
    AgentEventStatus,
    ConnectionRequest,
    ConversationStatus,
    Notification,
    NotificationType,
    PaymentStatus,
    PaymentTransaction,
)
from agentrelay.services.event_factory import EventFactory
from agentrelay.services.event_store import EventStore
from agentrelay.services.expiry_reaper import ExpiryReaper
from agentrelay.services.payment_service import PaymentService


@pytest.fixture
def reaper(session_scope, rail, clock) -> ExpiryReaper:
    return ExpiryReaper(session_scope, rail, clock=clock)


@pytest.fixture
def staked_event(db, clock, rail, make_agent, alice, bob):
    """An open connection-request event for Bob's agent with a pending stake."""
    make_agent(bob, name="bob-agent")
    request = ConnectionRequest(from_user_id=alice.id, to_user_id=bob.id, intent="hello")
    db.add(request)
    db.commit()
    PaymentService(db, rail).create_stake(request.id, "acct-alice", "acct-bob", 2.0)
    result = EventFactory(db, clock=clock).ensure_event_for_connection_request(request.id)
    db.commit()
    return result.event_id


def _expiry_notifications(db):
    return (
        db.query(Notification)
        .filter(Notification.title == "Agent event expired")
        .all()
    )


@pytest.mark.asyncio
async def test_double_fire_refunds_and_notifies_once(reaper, db, bob, staked_event):
    assert await reaper.on_expiry_timer(staked_event) is True
    assert await reaper.on_expiry_timer(staked_event) is False

    db.expire_all()
    event = db.get(AgentEvent, staked_event)
    assert event.status == AgentEventStatus.EXPIRED.value
    assert db.query(PaymentTransaction).one().status == PaymentStatus.REFUNDED.value
    refunds = db.query(Notification).filter(
        Notification.type == NotificationType.PAYMENT_REFUNDED.value
    ).all()
    assert len(refunds) == 1
    expired = _expiry_notifications(db)
    assert len(expired) == 1
    assert expired[0].user_id == bob.id
    assert expired[0].type == NotificationType.AGENT_DECISION.value


def test_expiry_closes_the_event_conversation(reaper, db, staked_event):
    reaper.expire(staked_event)

    db.expire_all()
    event = db.get(AgentEvent, staked_event)
    conversation = db.get(AgentConversation, event.conversation_id)
    assert conversation.status == ConversationStatus.EXPIRED.value


def test_decided_event_is_not_expired(reaper, db, rail, staked_event):
    EventStore(db).mark_decided(db.get(AgentEvent, staked_event), {"decision": "ACCEPT"})
    db.commit()

    assert reaper.expire(staked_event) is False

    db.expire_all()
    assert db.get(AgentEvent, staked_event).status == AgentEventStatus.DECIDED.value
    assert db.query(PaymentTransaction).one().status == PaymentStatus.PENDING.value
    assert _expiry_notifications(db) == []


def test_unknown_event_is_ignored(reaper):
    assert reaper.expire("missing") is False


def test_refund_failure_does_not_undo_expiry(reaper, db, staked_event, monkeypatch):
    def boom(self, request_id):
        raise RuntimeError("ledger down")

    monkeypatch.setattr(PaymentService, "refund", boom)

    assert reaper.expire(staked_event) is True

    db.expire_all()
    assert db.get(AgentEvent, staked_event).status == AgentEventStatus.EXPIRED.value
    assert len(_expiry_notifications(db)) == 1


def test_sweep_reaps_only_overdue_events(reaper, db, clock, staked_event):
    assert reaper.sweep() == []

    clock.advance(hours=24, seconds=1)
    assert reaper.sweep() == [staked_event]
    assert reaper.sweep() == []
