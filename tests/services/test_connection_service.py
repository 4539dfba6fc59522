"""Tests for agent-initiated connection requests."""

import pytest

from agentrelay.db.models import (
    AgentEvent,
    Connection,
    ConnectionCategory,
    ConnectionRequest,
    PaymentTransaction,
)
from agentrelay.errors import (
    AlreadyConnectedError,
    DuplicateRequestError,
    NotFoundError,
    PolicyViolationError,
    UnclaimedAgentError,
    ValidationError,
)
from agentrelay.services.connection_service import ConnectionService
from agentrelay.services.event_factory import EnsureOutcome, EventFactory
from agentrelay.services.task_queue import CONNECTION_REQUEST_CREATED, EVENT_CREATED


@pytest.fixture
def service(db, queue, rail, clock) -> ConnectionService:
    return ConnectionService(db, queue, rail, EventFactory(db, clock=clock))


@pytest.fixture
def alice_agent(make_agent, alice):
    agent, _ = make_agent(alice, name="alice-agent")
    return agent


def test_connect_creates_request_and_recipient_event(service, db, queue, make_agent, bob, alice_agent):
    bob_agent, _ = make_agent(bob, name="bob-agent")

    result = service.connect(alice_agent, bob.id, "Let's build something", ConnectionCategory.COLLABORATION)

    request = db.get(ConnectionRequest, result.request_id)
    assert request.from_user_id == alice_agent.user_id
    assert request.category == ConnectionCategory.COLLABORATION.value
    assert result.event.outcome is EnsureOutcome.CREATED
    assert db.get(AgentEvent, result.event.event_id).agent_id == bob_agent.id
    assert queue.sent_named(CONNECTION_REQUEST_CREATED) == [{"requestId": request.id}]
    assert queue.sent_named(EVENT_CREATED) == [{"eventId": result.event.event_id}]


def test_recipient_without_agent_only_fires_request_trigger(service, queue, bob, alice_agent):
    result = service.connect(alice_agent, bob.id, "Hello")

    assert result.event.outcome is EnsureOutcome.NO_ACTIVE_AGENT
    assert queue.sent_named(EVENT_CREATED) == []
    assert len(queue.sent_named(CONNECTION_REQUEST_CREATED)) == 1


def test_rejects_self_unknown_and_unclaimed(service, make_agent, alice, bob, alice_agent):
    with pytest.raises(ValidationError):
        service.connect(alice_agent, alice.id, "me")
    with pytest.raises(NotFoundError):
        service.connect(alice_agent, "nobody", "hi")
    stray, _ = make_agent(None, name="stray")
    with pytest.raises(UnclaimedAgentError):
        service.connect(stray, bob.id, "hi")


def test_already_connected(service, db, alice, bob, alice_agent):
    db.add(Connection(user_a_id=bob.id, user_b_id=alice.id))
    db.commit()
    with pytest.raises(AlreadyConnectedError):
        service.connect(alice_agent, bob.id, "again")


def test_duplicate_request(service, bob, alice_agent):
    service.connect(alice_agent, bob.id, "first")
    with pytest.raises(DuplicateRequestError):
        service.connect(alice_agent, bob.id, "second")


class TestStakes:
    def test_stake_escrowed_when_both_have_accounts(self, service, db, make_user, make_agent):
        sender = make_user("erin", payment_account_id="acct-erin")
        recipient = make_user("frank", payment_account_id="acct-frank")
        agent, _ = make_agent(sender, name="erin-agent")

        result = service.connect(agent, recipient.id, "Paid intro", stake=2.0)

        tx = db.query(PaymentTransaction).one()
        assert tx.connection_request_id == result.request_id
        assert (tx.from_account, tx.to_account, tx.amount) == ("acct-erin", "acct-frank", 2.0)
        assert result.stake_amount == 2.0

    def test_stake_without_accounts_is_recorded_but_not_escrowed(self, service, db, bob, alice_agent):
        result = service.connect(alice_agent, bob.id, "Paid intro", stake=1.0)

        assert db.get(ConnectionRequest, result.request_id).stake_amount == 1.0
        assert db.query(PaymentTransaction).count() == 0

    def test_required_stake_missing(self, service, db, make_user, alice_agent):
        picky = make_user("grace", require_stake=True, min_stake=1.5)
        with pytest.raises(PolicyViolationError) as exc:
            service.connect(alice_agent, picky.id, "hi")
        assert exc.value.status_code == 422
        assert db.query(ConnectionRequest).count() == 0

    @pytest.mark.parametrize("stake", [0.5, 20.0])
    def test_stake_out_of_range(self, service, make_user, alice_agent, stake):
        recipient = make_user("heidi", min_stake=1.0, max_stake=10.0)
        with pytest.raises(PolicyViolationError):
            service.connect(alice_agent, recipient.id, "hi", stake=stake)

    def test_daily_cap(self, service, make_user, make_agent):
        recipient = make_user("ivan", payment_account_id="acct-ivan", daily_max_stake=5.0)
        for name in ("judy", "ken"):
            sender = make_user(name, payment_account_id=f"acct-{name}")
            agent, _ = make_agent(sender, name=f"{name}-agent")
            if name == "judy":
                service.connect(agent, recipient.id, "hi", stake=4.0)
            else:
                with pytest.raises(PolicyViolationError, match="Daily payment limit"):
                    service.connect(agent, recipient.id, "hi", stake=2.0)
