"""Tests for RelayRuntime trigger handlers and restart recovery."""

import threading

import pytest

from agentrelay.db.models import (
    AgentEvent,
    AgentEventStatus,
    ConnectionRequest,
    Negotiation,
)
from agentrelay.services.event_factory import EnsureOutcome
from agentrelay.services.idempotency import sequential_factory
from agentrelay.services.runtime import RelayRuntime
from agentrelay.services.task_queue import (
    CONNECTION_REQUEST_CREATED,
    EVENT_CREATED,
    EVENT_TIMEOUT,
    NEGOTIATION_OFFER_CREATED,
    NEGOTIATION_TURN,
)


@pytest.fixture
def request_id(db, make_agent, alice, bob) -> str:
    make_agent(bob, name="bob-agent")
    request = ConnectionRequest(from_user_id=alice.id, to_user_id=bob.id, intent="hi")
    db.add(request)
    db.commit()
    return request.id


def test_registers_every_trigger(runtime, queue):
    assert set(queue.handlers) == {
        EVENT_CREATED,
        EVENT_TIMEOUT,
        CONNECTION_REQUEST_CREATED,
        NEGOTIATION_OFFER_CREATED,
        NEGOTIATION_TURN,
    }


def test_ttl_follows_config(runtime):
    assert runtime.ttl.total_seconds() == 24 * 3600


@pytest.mark.asyncio
async def test_request_fallback_is_idempotent(runtime, queue, db, request_id):
    first = await runtime.handle_connection_request_created({"requestId": request_id})
    second = await runtime.handle_connection_request_created({"requestId": request_id})

    assert first.outcome is EnsureOutcome.CREATED
    assert second.outcome is EnsureOutcome.ALREADY_EXISTS
    assert second.event_id == first.event_id
    assert queue.sent_named(EVENT_CREATED) == [{"eventId": first.event_id}]
    assert db.query(AgentEvent).count() == 1


@pytest.mark.asyncio
async def test_offer_trigger_creates_seller_event(runtime, queue, db, make_agent, make_listing, alice, bob):
    seller_agent, _ = make_agent(bob, name="bob-agent")
    listing = make_listing(bob)
    negotiation = Negotiation(listing_id=listing.id, buyer_id=alice.id, seller_id=bob.id, offer_price=300.0)
    db.add(negotiation)
    db.commit()

    result = await runtime.handle_negotiation_offer_created(
        {"negotiationId": negotiation.id, "message": "Still available?"}
    )

    event = db.get(AgentEvent, result.event_id)
    assert event.agent_id == seller_agent.id
    assert event.payload["message"] == "Still available?"
    assert queue.sent_named(EVENT_CREATED) == [{"eventId": event.id}]


@pytest.mark.asyncio
async def test_start_recovers_open_and_overdue_events(runtime, queue, db, clock, make_user, make_agent, bob, request_id):
    stale = await runtime.handle_connection_request_created({"requestId": request_id})
    clock.advance(hours=25)

    carol = make_user("carol")
    fresh_request = ConnectionRequest(from_user_id=carol.id, to_user_id=bob.id, intent="hello")
    db.add(fresh_request)
    db.commit()
    fresh = await runtime.handle_connection_request_created({"requestId": fresh_request.id})
    queue.sent.clear()

    await runtime.start()

    db.expire_all()
    assert db.get(AgentEvent, stale.event_id).status == AgentEventStatus.EXPIRED.value
    assert db.get(AgentEvent, fresh.event_id).status == AgentEventStatus.PENDING.value
    assert queue.sent_named(EVENT_CREATED) == [{"eventId": fresh.event_id}]
    await runtime.stop()


@pytest.mark.asyncio
async def test_session_work_runs_off_the_loop_thread(
    config, session_scope, queue, rail, chat_channels, clock, fake_sleep, request_id
):
    threads: list[int] = []

    def recording_scope():
        threads.append(threading.get_ident())
        return session_scope()

    runtime = RelayRuntime(
        config,
        session_scope=recording_scope,
        queue=queue,
        rail=rail,
        chat_channels=chat_channels,
        id_factory=sequential_factory("thread"),
        clock=clock,
        sleep=fake_sleep,
    )

    result = await runtime.handle_connection_request_created({"requestId": request_id})
    await runtime.reaper.on_expiry_timer(result.event_id)

    assert len(threads) >= 2
    assert threading.get_ident() not in threads
