"""
Negotiation endpoints.

WHAT: Create negotiations, submit bids, resolve, and list by party
WHY: HTTP surface over the negotiation state machine
HOW: Sync FastAPI routes (run in the threadpool, since the core blocks on
     locks and the database); domain exceptions map to HTTP in the error handler
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, status

from ....core.models import BidderRole, NegotiationStatus
from ....models.api_schemas import (
    CreateNegotiationRequest,
    SubmitBidRequest,
    ResolveNegotiationRequest,
)
from ....models.negotiation import BidRequest, BidRecord, NegotiationState
from ....models.rate_limit import RateCategory
from ....services import negotiation_service
from ...deps import get_actor_id, rate_limited

router = APIRouter()


@router.post(
    "/negotiations",
    response_model=NegotiationState,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limited(RateCategory.NEGOTIATION))],
)
def create_negotiation(request: CreateNegotiationRequest):
    """
    Open a negotiation.

    Reserves stock for the product; 409 when none is left unreserved.
    """
    return negotiation_service.create_negotiation(
        customer_id=request.customer_id,
        vendor_id=request.vendor_id,
        product_id=request.product_id,
        initial_bid=BidRequest(
            amount=request.amount,
            bidder_role=request.bidder_role,
            message=request.message,
            language=request.language,
        ),
        quantity=request.quantity,
        ttl_seconds=request.ttl_seconds,
    )


@router.get("/negotiations/{negotiation_id}", response_model=NegotiationState)
def get_negotiation(negotiation_id: str):
    """Current state with its full bid history."""
    return negotiation_service.get_negotiation(negotiation_id)


@router.get("/negotiations/{negotiation_id}/bids", response_model=List[BidRecord])
def get_bids(negotiation_id: str):
    return negotiation_service.get_bids(negotiation_id)


@router.post(
    "/negotiations/{negotiation_id}/bids",
    response_model=NegotiationState,
    dependencies=[Depends(rate_limited(RateCategory.NEGOTIATION))],
)
def submit_bid(
    negotiation_id: str,
    request: SubmitBidRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
):
    """
    Submit a counter-bid.

    When X-Actor-Id is present it must be the party for bidder_role.
    """
    return negotiation_service.submit_bid(
        negotiation_id,
        request.bidder_role,
        request.amount,
        actor_id=actor_id,
        message=request.message,
        language=request.language,
    )


@router.post(
    "/negotiations/{negotiation_id}/resolve",
    response_model=NegotiationState,
    dependencies=[Depends(rate_limited(RateCategory.NEGOTIATION))],
)
def resolve_negotiation(
    negotiation_id: str,
    request: ResolveNegotiationRequest,
    actor_id: Optional[str] = Depends(get_actor_id),
):
    """Accept, reject or cancel; a second resolve answers 409."""
    return negotiation_service.resolve(
        negotiation_id,
        request.outcome,
        final_price=request.final_price,
        actor_id=actor_id,
        actor_role=request.actor_role,
    )


@router.get("/parties/{party_id}/negotiations", response_model=List[NegotiationState])
def list_party_negotiations(
    party_id: str,
    role: Optional[BidderRole] = None,
    status: Optional[NegotiationStatus] = None,
):
    """Negotiations a party takes part in, most recently updated first."""
    return negotiation_service.list_for_party(party_id, role=role, status=status)
