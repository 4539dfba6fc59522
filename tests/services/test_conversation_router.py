"""Tests for two-sided chat routing."""

import pytest

from agentrelay.db.models import (
    AgentConversation,
    AgentEvent,
    AgentEventType,
    AgentMessage,
    MessageRole,
)
from agentrelay.services.conversation_router import ConversationRouter
from agentrelay.services.event_store import EventStore
from agentrelay.services.idempotency import sequential_factory


@pytest.fixture
def router(db, clock) -> ConversationRouter:
    return ConversationRouter(db, id_factory=sequential_factory("thread"), clock=clock)


@pytest.fixture
def agents(make_agent, alice, bob):
    alice_agent, _ = make_agent(alice, name="alice-agent")
    bob_agent, _ = make_agent(bob, name="bob-agent")
    return alice_agent, bob_agent


def test_route_message_writes_both_sides_and_raises_event(router, db, agents, alice, bob):
    alice_agent, bob_agent = agents

    routed = router.route_message(alice_agent, bob.id, "Hello Bob")
    db.commit()

    assert routed.chat_thread_id == "thread-1"
    sender_conv = db.get(AgentConversation, routed.sender_conversation_id)
    recipient_conv = db.get(AgentConversation, routed.recipient_conversation_id)
    assert sender_conv.agent_id == alice_agent.id
    assert sender_conv.peer_user_id == bob.id
    assert recipient_conv.agent_id == bob_agent.id
    assert recipient_conv.peer_user_id == alice.id

    event = db.get(AgentEvent, routed.event_id)
    assert event.agent_id == bob_agent.id
    assert event.type == AgentEventType.NEW_MESSAGE.value
    assert event.conversation_id == recipient_conv.id
    assert event.payload["senderUserId"] == alice.id
    assert event.payload["content"] == "Hello Bob"
    assert event.payload["chatThreadId"] == "thread-1"


def test_alternating_messages_keep_histories_mirrored(router, db, agents, alice, bob):
    alice_agent, bob_agent = agents
    turns = [
        (alice_agent, bob.id, "Hi"),
        (bob_agent, alice.id, "Hey, what's up?"),
        (alice_agent, bob.id, "Want to collaborate?"),
        (bob_agent, alice.id, "Sure"),
        (alice_agent, bob.id, "Great"),
    ]
    thread_ids = set()
    for sender, target, text in turns:
        thread_ids.add(router.route_message(sender, target, text).chat_thread_id)
    db.commit()

    assert thread_ids == {"thread-1"}
    store = EventStore(db)
    alice_side = store.find_thread_conversation(alice_agent.id, "thread-1")
    bob_side = store.find_thread_conversation(bob_agent.id, "thread-1")
    alice_msgs = store.list_messages(alice_side.id)
    bob_msgs = store.list_messages(bob_side.id)

    assert len(alice_msgs) == len(bob_msgs) == len(turns)
    assert [m.content for m in alice_msgs] == [m.content for m in bob_msgs]
    swap = {MessageRole.AGENT.value: MessageRole.USER.value, MessageRole.USER.value: MessageRole.AGENT.value}
    assert [swap[m.role] for m in alice_msgs] == [m.role for m in bob_msgs]
    assert alice_msgs[0].role == MessageRole.AGENT.value
    assert db.query(AgentConversation).count() == 2
    assert db.query(AgentEvent).count() == len(turns)


def test_target_without_active_agent_writes_nothing(router, db, make_agent, alice, make_user):
    alice_agent, _ = make_agent(alice)
    carol = make_user("carol")

    assert router.route_message(alice_agent, carol.id, "Anyone there?") is None
    assert db.query(AgentConversation).count() == 0
    assert db.query(AgentMessage).count() == 0
    assert db.query(AgentEvent).count() == 0


def test_unclaimed_sender_is_rejected(router, make_agent, bob):
    make_agent(bob)
    stray, _ = make_agent(None, name="stray")

    with pytest.raises(ValueError):
        router.route_message(stray, bob.id, "hi")
