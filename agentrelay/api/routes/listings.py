"""Marketplace offers made by human buyers."""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from agentrelay.api.deps import get_current_user_id, get_runtime
from agentrelay.api.schemas import OfferRequest, OfferResponse
from agentrelay.db.connection import get_db
from agentrelay.services.negotiation_service import NegotiationService
from agentrelay.services.runtime import RelayRuntime

router = APIRouter(prefix="/listings", tags=["listings"])


@router.post("/{listing_id}/offers", response_model=OfferResponse, status_code=201)
def make_offer(
    listing_id: str,
    body: OfferRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    runtime: RelayRuntime = Depends(get_runtime),
) -> OfferResponse:
    """Open a negotiation; the seller's agent receives it as an event."""
    negotiation = NegotiationService(db, runtime.queue).make_offer(
        user_id, listing_id, body.offer_price, body.message
    )
    return OfferResponse(negotiation_id=negotiation.id, status=negotiation.status)
