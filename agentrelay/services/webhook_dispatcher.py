"""Single webhook push attempt for an agent event.

One call to ``dispatch`` makes exactly one HTTP POST and records exactly
one attempt against the event, whatever the outcome. Retry policy lives in
the DeliveryScheduler.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from agentrelay.config import ServerConfig, WebhookConfig
from agentrelay.db.connection import SessionScope
from agentrelay.db.models import AgentEvent
from agentrelay.services.event_store import EventStore
from agentrelay.services.idempotency import generate_delivery_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookTarget:
    """Everything needed to push one event, detached from any session."""

    event_id: str
    url: str
    token: str | None
    envelope: dict[str, Any]


def callback_url(app_url: str, event_id: str) -> str:
    return f"{app_url}/api/v1/agent/events/{event_id}/decide"


def build_envelope(event: AgentEvent, app_url: str) -> dict[str, Any]:
    """The JSON body pushed to an agent's receiver."""
    return {
        "eventId": event.id,
        "type": event.type,
        "payload": event.payload,
        "callbackUrl": callback_url(app_url, event.id),
        "expiresAt": event.expires_at,
    }


def build_target(
    event: AgentEvent, server: ServerConfig, webhook: WebhookConfig
) -> WebhookTarget | None:
    """Resolve the push target, or None when the agent is poll-only."""
    agent = event.agent
    if not agent.webhook_enabled or not agent.gateway_url:
        return None
    return WebhookTarget(
        event_id=event.id,
        url=f"{agent.gateway_url.rstrip('/')}{webhook.path}",
        token=agent.gateway_token,
        envelope=build_envelope(event, server.app_url),
    )


class WebhookDispatcher:
    """Performs one bounded-time POST and updates delivery bookkeeping."""

    def __init__(
        self,
        session_scope: SessionScope,
        config: WebhookConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.session_scope = session_scope
        self.config = config
        self.transport = transport

    async def dispatch(self, target: WebhookTarget) -> bool:
        """POST the envelope once.

        A 2xx response is success; non-2xx, network errors and timeouts
        are failures. The attempt is counted either way.

        Returns:
            True if the receiver accepted the event.
        """
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": generate_delivery_key(target.event_id),
        }
        if target.token:
            headers["Authorization"] = f"Bearer {target.token}"

        delivered = False
        try:
            async with httpx.AsyncClient(
                timeout=self.config.timeout_seconds, transport=self.transport
            ) as client:
                response = await client.post(target.url, json=target.envelope, headers=headers)
            delivered = response.is_success
            if not delivered:
                logger.warning(
                    "Webhook for event %s returned HTTP %d", target.event_id, response.status_code
                )
        except httpx.TimeoutException:
            logger.warning(
                "Webhook for event %s timed out after %.1fs",
                target.event_id, self.config.timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning("Webhook for event %s failed: %s", target.event_id, e)

        await asyncio.to_thread(self._record_attempt, target.event_id, delivered)
        return delivered

    def _record_attempt(self, event_id: str, delivered: bool) -> None:
        with self.session_scope() as db:
            EventStore(db).record_webhook_attempt(event_id, delivered)
