"""Marketplace offers that open a negotiation between two agents."""

import logging

from sqlalchemy.orm import Session

from agentrelay.db.models import (
    Listing,
    ListingStatus,
    Negotiation,
    NegotiationStatus,
    User,
)
from agentrelay.errors import ConflictError, NotFoundError, ValidationError
from agentrelay.services.task_queue import NEGOTIATION_OFFER_CREATED, TriggerSender

logger = logging.getLogger(__name__)


class NegotiationService:
    def __init__(self, db: Session, queue: TriggerSender) -> None:
        self.db = db
        self.queue = queue

    def make_offer(
        self,
        buyer_id: str,
        listing_id: str,
        offer_price: float,
        message: str | None = None,
    ) -> Negotiation:
        """Open an ACTIVE negotiation and hand it to the seller's agent."""
        if self.db.get(User, buyer_id) is None:
            raise NotFoundError("User", buyer_id)
        listing = self.db.get(Listing, listing_id)
        if listing is None:
            raise NotFoundError("Listing", listing_id)
        if listing.status != ListingStatus.ACTIVE.value:
            raise ConflictError("Listing is not available")
        if listing.seller_id == buyer_id:
            raise ValidationError("Cannot make an offer on your own listing")

        negotiation = Negotiation(
            listing_id=listing.id,
            buyer_id=buyer_id,
            seller_id=listing.seller_id,
            offer_price=offer_price,
            status=NegotiationStatus.ACTIVE.value,
        )
        self.db.add(negotiation)
        self.db.commit()
        self.db.refresh(negotiation)
        logger.info("Negotiation %s opened on listing %s at %s", negotiation.id, listing.id, offer_price)

        self.queue.send(
            NEGOTIATION_OFFER_CREATED,
            {"negotiationId": negotiation.id, "message": message},
        )
        return negotiation
