"""Service for in-app user notifications.

Methods do NOT call db.commit(); the caller owns the transaction.
"""

import json
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from agentrelay.db.models import Notification, NotificationType

logger = logging.getLogger(__name__)


class NotificationService:
    """Create notifications, optionally idempotent on a dedupe key."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def notify(
        self,
        user_id: str,
        type: NotificationType,
        title: str,
        body: str,
        metadata: dict[str, Any] | None = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            type=type.value,
            title=title,
            body=body,
            metadata_json=json.dumps(metadata) if metadata else None,
        )
        self.db.add(notification)
        self.db.flush()
        return notification

    def notify_once(
        self,
        dedupe_key: str,
        user_id: str,
        type: NotificationType,
        title: str,
        body: str,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[Notification, bool]:
        """Create a notification unless one with ``dedupe_key`` exists.

        Check-then-create, re-verified by the unique constraint on
        dedupe_key: a concurrent loser re-reads and returns the winner.

        Returns:
            (notification, created) tuple.
        """
        existing = self._get_by_key(dedupe_key)
        if existing:
            return existing, False

        notification = Notification(
            user_id=user_id,
            type=type.value,
            title=title,
            body=body,
            metadata_json=json.dumps(metadata) if metadata else None,
            dedupe_key=dedupe_key,
        )
        try:
            with self.db.begin_nested():
                self.db.add(notification)
                self.db.flush()
        except IntegrityError:
            existing = self._get_by_key(dedupe_key)
            if existing is None:
                raise
            logger.debug("Notification %s created concurrently", dedupe_key)
            return existing, False
        return notification, True

    def list_for_user(self, user_id: str) -> list[Notification]:
        return (
            self.db.query(Notification)
            .filter(Notification.user_id == user_id)
            .order_by(Notification.created_at)
            .all()
        )

    def _get_by_key(self, dedupe_key: str) -> Notification | None:
        return (
            self.db.query(Notification)
            .filter(Notification.dedupe_key == dedupe_key)
            .first()
        )
