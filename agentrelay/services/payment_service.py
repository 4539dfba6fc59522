"""Stake transactions attached to connection requests.

The actual money movement is delegated to a PaymentRail; this service owns
the PaymentTransaction bookkeeping and the recipient's payment policy.

Lifecycle: PENDING -> SETTLED (request accepted)
           PENDING -> REFUNDED (request rejected or its event expired)

Methods do NOT call db.commit(); the caller owns the transaction.
"""

import logging
from datetime import datetime, time
from typing import Any, Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session

from agentrelay.db.models import (
    ConnectionRequest,
    NotificationType,
    PaymentStatus,
    PaymentTransaction,
    Profile,
    to_iso,
    utc_now,
)
from agentrelay.errors import PolicyViolationError
from agentrelay.services.idempotency import uuid_factory
from agentrelay.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


class PaymentRail(Protocol):
    """Opaque transfer backend."""

    def transfer(self, sender: str, receiver: str, amount: float) -> str:
        """Move ``amount`` from sender to receiver, returning a tx hash."""
        ...


class LocalLedgerRail:
    """Rail that records transfers locally and mints an opaque tx hash.

    Used when no external payment network is configured.
    """

    def transfer(self, sender: str, receiver: str, amount: float) -> str:
        tx_hash = f"local-{uuid_factory()}"
        logger.info("Ledger transfer %s -> %s (%s): %s", sender, receiver, amount, tx_hash)
        return tx_hash


def _fmt(amount: float) -> str:
    return f"{amount:g}"


class PaymentService:
    """Create, settle and refund connection-request stakes."""

    def __init__(self, db: Session, rail: PaymentRail) -> None:
        self.db = db
        self.rail = rail
        self.notifications = NotificationService(db)

    def get_for_request(self, connection_request_id: str) -> PaymentTransaction | None:
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.connection_request_id == connection_request_id)
            .first()
        )

    def validate_stake(self, to_user_id: str, stake: float | None) -> None:
        """Check a proposed stake against the recipient's payment policy.

        Raises:
            PolicyViolationError: Stake missing, out of range, or over the
                recipient's daily cap.
        """
        profile = self.db.query(Profile).filter(Profile.user_id == to_user_id).first()
        if profile is None:
            return

        if profile.require_stake and (not stake or stake <= 0):
            raise PolicyViolationError(
                f"This user requires a minimum stake of {_fmt(profile.min_stake)}"
            )
        if not stake:
            return
        if stake < profile.min_stake:
            raise PolicyViolationError(f"Stake must be at least {_fmt(profile.min_stake)}")
        if stake > profile.max_stake:
            raise PolicyViolationError(f"Stake must not exceed {_fmt(profile.max_stake)}")

        today_start = datetime.combine(utc_now().date(), time.min)
        daily_total = (
            self.db.query(func.coalesce(func.sum(PaymentTransaction.amount), 0.0))
            .filter(
                PaymentTransaction.to_account == (profile.payment_account_id or ""),
                PaymentTransaction.status.in_(
                    [PaymentStatus.PENDING.value, PaymentStatus.SETTLED.value]
                ),
                PaymentTransaction.created_at >= to_iso(today_start),
            )
            .scalar()
        )
        if daily_total + stake > profile.daily_max_stake:
            remaining = profile.daily_max_stake - daily_total
            raise PolicyViolationError(
                f"Daily payment limit exceeded. Remaining capacity: {_fmt(remaining)}"
            )

    def create_stake(
        self,
        connection_request_id: str,
        from_account: str,
        to_account: str,
        amount: float,
    ) -> PaymentTransaction:
        tx = PaymentTransaction(
            connection_request_id=connection_request_id,
            from_account=from_account,
            to_account=to_account,
            amount=amount,
            status=PaymentStatus.PENDING.value,
        )
        self.db.add(tx)
        self.db.flush()
        logger.info("Created stake %s for request %s (%s)", tx.id, connection_request_id, amount)
        return tx

    def _transition(self, tx_id: str, current: PaymentStatus, values: dict[str, Any]) -> bool:
        """Conditional status update; False when the row was not in ``current``."""
        updated = (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.id == tx_id,
                PaymentTransaction.status == current.value,
            )
            .update(values, synchronize_session="fetch")
        )
        return bool(updated)

    def settle(self, connection_request_id: str) -> PaymentTransaction | None:
        """Transfer a PENDING stake to the recipient and notify both sides.

        The row is claimed (PENDING->SETTLED) before the rail is called, so
        a concurrent settle finds nothing to claim and never transfers. A
        failed transfer puts the row back to PENDING and re-raises.

        Returns:
            The settled transaction, or None if there was no PENDING stake.
        """
        tx = self.get_for_request(connection_request_id)
        if tx is None or tx.status != PaymentStatus.PENDING.value:
            return None

        claimed = self._transition(
            tx.id,
            PaymentStatus.PENDING,
            {"status": PaymentStatus.SETTLED.value, "settled_at": to_iso(utc_now())},
        )
        if not claimed:
            return None

        try:
            tx_hash = self.rail.transfer(tx.from_account, tx.to_account, tx.amount)
        except Exception:
            self._transition(
                tx.id,
                PaymentStatus.SETTLED,
                {"status": PaymentStatus.PENDING.value, "settled_at": None},
            )
            raise
        tx.tx_hash = tx_hash
        self.db.flush()

        request = self.db.get(ConnectionRequest, connection_request_id)
        metadata = {
            "connectionRequestId": connection_request_id,
            "transactionId": tx.id,
            "amount": tx.amount,
        }
        self.notifications.notify(
            request.from_user_id,
            NotificationType.PAYMENT_SETTLED,
            "Payment settled",
            f"{_fmt(tx.amount)} transferred for accepted connection.",
            metadata,
        )
        self.notifications.notify(
            request.to_user_id,
            NotificationType.PAYMENT_SETTLED,
            "Payment received",
            f"{_fmt(tx.amount)} received for accepted connection.",
            metadata,
        )
        logger.info("Settled stake %s (%s)", tx.id, tx_hash)
        return tx

    def refund(self, connection_request_id: str) -> PaymentTransaction | None:
        """Refund a PENDING stake to its sender.

        The PENDING->REFUNDED update is conditional, so concurrent or
        repeated refunds for one request produce a single refund.

        Returns:
            The refunded transaction, or None if there was no PENDING stake.
        """
        tx = self.get_for_request(connection_request_id)
        if tx is None or tx.status != PaymentStatus.PENDING.value:
            return None

        updated = self._transition(
            tx.id,
            PaymentStatus.PENDING,
            {"status": PaymentStatus.REFUNDED.value, "refunded_at": to_iso(utc_now())},
        )
        if not updated:
            return None

        request = self.db.get(ConnectionRequest, connection_request_id)
        self.notifications.notify(
            request.from_user_id,
            NotificationType.PAYMENT_REFUNDED,
            "Stake refunded",
            f"{_fmt(tx.amount)} refunded, connection was not accepted.",
            {
                "connectionRequestId": connection_request_id,
                "transactionId": tx.id,
                "amount": tx.amount,
            },
        )
        logger.info("Refunded stake %s for request %s", tx.id, connection_request_id)
        return tx
