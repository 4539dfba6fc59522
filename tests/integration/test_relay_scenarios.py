"""End-to-end scenarios across the API, the runtime handlers and the store.

Triggers land on the RecordingTaskQueue; ``pump`` consumes them through
the runtime's registered handlers the way the real queue would, until no
new triggers appear.
"""

import pytest

from agentrelay.db.models import (
    Connection,
    ConnectionRequest,
    ConnectionRequestStatus,
    ListingStatus,
    Negotiation,
    NegotiationStatus,
    Notification,
    NotificationType,
)

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


async def pump(queue) -> None:
    while queue.sent:
        name, data = queue.sent.pop(0)
        await queue.handlers[name](data)


def _poll(client, bearer, key):
    response = client.get("/api/v1/agent/events", headers=bearer(key))
    assert response.status_code == 200
    return response.json()["events"]


def _decide(client, bearer, key, event_id, **body):
    response = client.post(f"/api/v1/agent/events/{event_id}/decide", json=body, headers=bearer(key))
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def keys(make_agent, alice, bob):
    _, alice_key = make_agent(alice, name="alice-agent")
    _, bob_key = make_agent(bob, name="bob-agent")
    return alice_key, bob_key


async def test_connection_request_accepted(client, bearer, db, queue, runtime, keys, alice, bob):
    alice_key, bob_key = keys

    sent = client.post(
        "/api/v1/agent/connect",
        json={"toUserId": bob.id, "intent": "Both into film photography", "category": "SOCIAL"},
        headers=bearer(alice_key),
    )
    assert sent.status_code == 201
    await pump(queue)

    events = _poll(client, bearer, bob_key)
    assert len(events) == 1
    assert events[0]["payload"]["intent"] == "Both into film photography"
    assert _poll(client, bearer, alice_key) == []

    _decide(client, bearer, bob_key, events[0]["id"], decision="ACCEPT", confidence=0.9)

    db.expire_all()
    request = db.get(ConnectionRequest, sent.json()["requestId"])
    assert request.status == ConnectionRequestStatus.ACCEPTED.value
    connection = db.query(Connection).one()
    assert {connection.user_a_id, connection.user_b_id} == {alice.id, bob.id}
    accepted = db.query(Notification).filter(Notification.user_id == alice.id).one()
    assert accepted.type == NotificationType.CONNECTION_ACCEPTED.value
    assert _poll(client, bearer, bob_key) == []


async def test_connection_request_ask_more(client, bearer, db, queue, keys, alice, bob):
    alice_key, bob_key = keys

    sent = client.post(
        "/api/v1/agent/connect", json={"toUserId": bob.id, "intent": "Hi"}, headers=bearer(alice_key)
    )
    await pump(queue)
    event = _poll(client, bearer, bob_key)[0]

    _decide(client, bearer, bob_key, event["id"], decision="ASK_MORE", reason="need more info")

    db.expire_all()
    request = db.get(ConnectionRequest, sent.json()["requestId"])
    assert request.status == ConnectionRequestStatus.IN_CONVERSATION.value
    note = db.query(Notification).filter(Notification.user_id == alice.id).one()
    assert note.title == "Agent wants to know more"
    assert note.body == "need more info"


async def test_negotiation_counter_then_accept(
    client, bearer, db, queue, keys, make_listing, alice, bob
):
    alice_key, bob_key = keys
    listing = make_listing(bob, title="Leica M6", price=450.0)

    offer = client.post(
        f"/api/v1/listings/{listing.id}/offers",
        json={"offerPrice": 350, "message": "Would you take 350?"},
        headers={"X-User-Id": alice.id},
    )
    assert offer.status_code == 201
    negotiation_id = offer.json()["negotiationId"]
    await pump(queue)

    seller_events = _poll(client, bearer, bob_key)
    assert [e["type"] for e in seller_events] == ["NEGOTIATION_OFFER"]
    assert seller_events[0]["payload"]["offerPrice"] == 350

    _decide(
        client, bearer, bob_key, seller_events[0]["id"],
        decision="COUNTER", counterPrice=425, reason="Mint condition",
    )
    await pump(queue)

    buyer_events = _poll(client, bearer, alice_key)
    assert [e["type"] for e in buyer_events] == ["NEGOTIATION_TURN"]
    assert buyer_events[0]["payload"]["counterPrice"] == 425
    assert _poll(client, bearer, bob_key) == []

    _decide(client, bearer, alice_key, buyer_events[0]["id"], decision="ACCEPT")

    db.expire_all()
    negotiation = db.get(Negotiation, negotiation_id)
    assert negotiation.status == NegotiationStatus.ACCEPTED.value
    assert negotiation.listing.status == ListingStatus.SOLD.value
    updates = (
        db.query(Notification)
        .filter(Notification.type == NotificationType.NEGOTIATION_UPDATE.value)
        .all()
    )
    assert len(updates) == 2
    assert sorted(n.user_id for n in updates) == sorted([alice.id, bob.id])


async def test_unanswered_event_expires_and_refunds(
    client, bearer, db, queue, runtime, clock, make_user, make_agent
):
    payer = make_user("erin", payment_account_id="acct-erin")
    payee = make_user("frank", payment_account_id="acct-frank")
    _, payer_key = make_agent(payer, name="erin-agent")
    _, payee_key = make_agent(payee, name="frank-agent")

    client.post(
        "/api/v1/agent/connect",
        json={"toUserId": payee.id, "intent": "Paid intro", "stakeNear": 2.0},
        headers=bearer(payer_key),
    )
    await pump(queue)
    _, name, data, _ = queue.scheduled[0]

    clock.advance(hours=24, seconds=1)
    await queue.handlers[name](data)

    assert _poll(client, bearer, payee_key) == []
    db.expire_all()
    refunded = db.query(Notification).filter(
        Notification.type == NotificationType.PAYMENT_REFUNDED.value
    ).one()
    assert refunded.user_id == payer.id
