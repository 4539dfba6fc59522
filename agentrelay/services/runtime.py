"""Wires the background side of the relay: queue, handlers, recovery.

One RelayRuntime exists per process. The FastAPI lifespan builds it,
``start()``s it, and request handlers reach it through ``get_runtime``.
Collaborators (clock, sleep, id factory, HTTP transport, payment rail,
chat provisioner) are injectable so tests never wait or hit the network.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import httpx
from sqlalchemy.orm import Session

from agentrelay.config import RelayConfig
from agentrelay.db.connection import SessionScope, get_db_context
from agentrelay.db.models import utc_now
from agentrelay.services.chat_channels import ChatChannelProvisioner, NullChatChannelProvisioner
from agentrelay.services.delivery_scheduler import DeliveryScheduler, Sleep
from agentrelay.services.event_factory import EnsureResult, EventFactory
from agentrelay.services.event_store import EventStore
from agentrelay.services.expiry_reaper import ExpiryReaper
from agentrelay.services.idempotency import IdFactory, uuid_factory
from agentrelay.services.payment_service import LocalLedgerRail, PaymentRail
from agentrelay.services.task_queue import (
    CONNECTION_REQUEST_CREATED,
    EVENT_CREATED,
    EVENT_TIMEOUT,
    NEGOTIATION_OFFER_CREATED,
    NEGOTIATION_TURN,
    RecordingTaskQueue,
    TaskQueue,
)
from agentrelay.services.webhook_dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


class RelayRuntime:
    def __init__(
        self,
        config: RelayConfig,
        session_scope: SessionScope = get_db_context,
        queue: TaskQueue | RecordingTaskQueue | None = None,
        rail: PaymentRail | None = None,
        chat_channels: ChatChannelProvisioner | None = None,
        id_factory: IdFactory = uuid_factory,
        clock: Callable[[], datetime] = utc_now,
        sleep: Sleep = asyncio.sleep,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.session_scope = session_scope
        self.clock = clock
        self.queue = queue if queue is not None else TaskQueue(clock=clock)
        self.rail = rail if rail is not None else LocalLedgerRail()
        self.chat_channels = chat_channels if chat_channels is not None else NullChatChannelProvisioner()
        self.id_factory = id_factory

        self.dispatcher = WebhookDispatcher(session_scope, config.webhook, transport=transport)
        self.scheduler = DeliveryScheduler(
            session_scope,
            self.dispatcher,
            self.queue,
            config.server,
            config.webhook,
            sleep=sleep,
        )
        self.reaper = ExpiryReaper(session_scope, self.rail, clock=clock)
        self._register_handlers()

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.config.events.ttl_hours)

    def event_factory(self, db: Session) -> EventFactory:
        return EventFactory(db, ttl=self.ttl, clock=self.clock)

    def _register_handlers(self) -> None:
        self.queue.register(EVENT_CREATED, self.scheduler.handle_event_created)
        self.queue.register(EVENT_TIMEOUT, self.reaper.handle_timeout)
        self.queue.register(CONNECTION_REQUEST_CREATED, self.handle_connection_request_created)
        self.queue.register(NEGOTIATION_OFFER_CREATED, self.handle_negotiation_offer_created)
        self.queue.register(NEGOTIATION_TURN, self.handle_negotiation_turn)

    # =========================================================================
    # Factory triggers
    # =========================================================================

    def _announce(self, result: EnsureResult) -> EnsureResult:
        if result.created:
            self.queue.send(EVENT_CREATED, {"eventId": result.event_id})
        return result

    async def handle_connection_request_created(self, data: dict[str, Any]) -> EnsureResult:
        result = await asyncio.to_thread(
            self._ensure,
            lambda factory: factory.ensure_event_for_connection_request(data["requestId"]),
        )
        return self._announce(result)

    async def handle_negotiation_offer_created(self, data: dict[str, Any]) -> EnsureResult:
        result = await asyncio.to_thread(
            self._ensure,
            lambda factory: factory.ensure_event_for_negotiation_offer(
                data["negotiationId"], data.get("message")
            ),
        )
        return self._announce(result)

    async def handle_negotiation_turn(self, data: dict[str, Any]) -> EnsureResult:
        result = await asyncio.to_thread(
            self._ensure,
            lambda factory: factory.ensure_event_for_negotiation_turn(
                data["negotiationId"], data["counterPrice"], data.get("reason")
            ),
        )
        return self._announce(result)

    def _ensure(self, ensure: Callable[[EventFactory], EnsureResult]) -> EnsureResult:
        """Run one EventFactory call in its own committed session (worker thread)."""
        with self.session_scope() as db:
            return ensure(self.event_factory(db))

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        await self.queue.start()
        await asyncio.to_thread(self.recover)

    async def stop(self) -> None:
        await self.queue.stop()

    def recover(self) -> int:
        """Reap overdue events and resume delivery/timers for open ones.

        Returns:
            Number of open events re-scheduled.
        """
        self.reaper.sweep()
        with self.session_scope() as db:
            open_ids = [e.id for e in EventStore(db, clock=self.clock).list_open_events()]
        for event_id in open_ids:
            self.queue.send(EVENT_CREATED, {"eventId": event_id})
        if open_ids:
            logger.info("Resumed delivery for %d open event(s)", len(open_ids))
        return len(open_ids)
