"""Expiry of undecided agent events and their compensating actions.

The EXPIRED transition is committed on its own before any compensation
runs; a failing refund or notification is logged and never undoes it.
Firing twice for one event is a no-op the second time because the
transition is a conditional UPDATE on the open statuses.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from agentrelay.db.connection import SessionScope
from agentrelay.db.models import ConversationStatus, NotificationType, utc_now
from agentrelay.services.event_store import EventStore
from agentrelay.services.notification_service import NotificationService
from agentrelay.services.payment_service import PaymentRail, PaymentService

logger = logging.getLogger(__name__)


class ExpiryReaper:
    def __init__(
        self,
        session_scope: SessionScope,
        rail: PaymentRail,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.session_scope = session_scope
        self.rail = rail
        self.clock = clock

    async def on_expiry_timer(self, event_id: str) -> bool:
        """Expire the event if still open.

        Returns:
            True if this call performed the EXPIRED transition.
        """
        return await asyncio.to_thread(self.expire, event_id)

    async def handle_timeout(self, data: dict[str, Any]) -> None:
        await self.on_expiry_timer(data["eventId"])

    def expire(self, event_id: str) -> bool:
        with self.session_scope() as db:
            store = EventStore(db, clock=self.clock)
            event = store.get_event(event_id)
            if event is None:
                logger.warning("Expiry fired for unknown event %s", event_id)
                return False
            if not store.mark_expired(event_id):
                logger.debug("Event %s already %s; expiry is a no-op", event_id, event.status)
                return False

            conversation = event.conversation
            if conversation is not None and conversation.chat_thread_id is None:
                store.close_conversation(conversation.id, ConversationStatus.EXPIRED)

            request_id = event.connection_request_id
            owner_id = event.agent.user_id if event.agent else None

        logger.info("Expired event %s", event_id)

        if request_id and owner_id:
            self._compensate(event_id, request_id, owner_id)
        return True

    def _compensate(self, event_id: str, request_id: str, owner_id: str) -> None:
        try:
            with self.session_scope() as db:
                PaymentService(db, self.rail).refund(request_id)
        except Exception:
            logger.exception("Refund for expired event %s (request %s) failed", event_id, request_id)

        try:
            with self.session_scope() as db:
                NotificationService(db).notify_once(
                    f"event-expired:{event_id}",
                    owner_id,
                    NotificationType.AGENT_DECISION,
                    "Agent event expired",
                    "A connection request event was not handled in time.",
                    {"eventId": event_id, "requestId": request_id},
                )
        except Exception:
            logger.exception("Expiry notification for event %s failed", event_id)

    def sweep(self) -> list[str]:
        """Expire every open event whose expiry has passed.

        Returns:
            Ids of events expired by this sweep.
        """
        with self.session_scope() as db:
            overdue = EventStore(db, clock=self.clock).list_overdue_ids()
        expired = [event_id for event_id in overdue if self.expire(event_id)]
        if expired:
            logger.info("Expiry sweep reaped %d event(s)", len(expired))
        return expired
