"""Webhook push with bounded retries, then expiry timer arming.

Runs once per created event (trigger ``agent/event.created``). The retry
loop is sequential within one event. Replays of the trigger only spend the
attempts the event has left, so ``webhook_attempts`` never exceeds
``max_attempts`` through replays alone.

Session work runs in worker threads (``asyncio.to_thread``) so a contended
SQLite write never stalls other deliveries or timers on the loop.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from agentrelay.config import ServerConfig, WebhookConfig
from agentrelay.db.connection import SessionScope
from agentrelay.db.models import AgentEventStatus, from_iso
from agentrelay.services.event_store import EventStore
from agentrelay.services.task_queue import EVENT_TIMEOUT, TriggerSender
from agentrelay.services.webhook_dispatcher import WebhookDispatcher, WebhookTarget, build_target

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class DeliveryOutcome:
    event_id: str
    attempts: int = 0
    delivered: bool = False
    skipped: str | None = None
    timer_armed: bool = False


class DeliveryScheduler:
    def __init__(
        self,
        session_scope: SessionScope,
        dispatcher: WebhookDispatcher,
        queue: TriggerSender,
        server: ServerConfig,
        webhook: WebhookConfig,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.session_scope = session_scope
        self.dispatcher = dispatcher
        self.queue = queue
        self.server = server
        self.webhook = webhook
        self.sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the ``attempt``-th (0-based) failed attempt."""
        return self.webhook.backoff_base_seconds * (2 ** attempt)

    def _load(
        self, outcome: DeliveryOutcome
    ) -> tuple[WebhookTarget | None, datetime, int] | None:
        """Read what delivery needs, or None when there is nothing to do."""
        with self.session_scope() as db:
            event = EventStore(db).get_event(outcome.event_id)
            if event is None:
                logger.warning("Event %s not found; nothing to deliver", outcome.event_id)
                outcome.skipped = "not_found"
                return None
            if event.status in (AgentEventStatus.DECIDED.value, AgentEventStatus.EXPIRED.value):
                outcome.skipped = "terminal"
                return None

            target = None
            if event.status != AgentEventStatus.PENDING.value:
                outcome.skipped = "already_delivered"
            else:
                target = build_target(event, self.server, self.webhook)
                if target is None:
                    outcome.skipped = "poll_only"
            return target, from_iso(event.expires_at), event.webhook_attempts

    async def on_event_created(self, event_id: str) -> DeliveryOutcome:
        outcome = DeliveryOutcome(event_id=event_id)
        loaded = await asyncio.to_thread(self._load, outcome)
        if loaded is None:
            return outcome
        target, expires_at, already = loaded

        if target is not None:
            remaining = self.webhook.max_attempts - already
            if remaining <= 0:
                outcome.skipped = "attempts_exhausted"
            for i in range(max(remaining, 0)):
                attempt = already + i
                outcome.attempts += 1
                delivered = await self.dispatcher.dispatch(target)
                logger.info(
                    "Webhook attempt %d/%d for event %s: %s",
                    attempt + 1, self.webhook.max_attempts, event_id,
                    "delivered" if delivered else "failed",
                )
                if delivered:
                    outcome.delivered = True
                    break
                if i < remaining - 1:
                    await self.sleep(self.backoff_delay(attempt))

        # Fixed at creation; independent of delivery outcome
        self.queue.schedule_at(expires_at, EVENT_TIMEOUT, {"eventId": event_id}, key=event_id)
        outcome.timer_armed = True
        return outcome

    async def handle_event_created(self, data: dict[str, Any]) -> None:
        await self.on_event_created(data["eventId"])
