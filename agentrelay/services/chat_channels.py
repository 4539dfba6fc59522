"""Direct-message channel provisioning for accepted connections."""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class ChatChannelProvisioner(Protocol):
    def ensure_dm_channel(self, connection_id: str) -> None:
        """Make sure a DM channel exists for the connection. Idempotent."""
        ...


class NullChatChannelProvisioner:
    """Provisioner for deployments without an external chat server."""

    def ensure_dm_channel(self, connection_id: str) -> None:
        logger.debug("No chat server configured; skipping DM channel for %s", connection_id)
