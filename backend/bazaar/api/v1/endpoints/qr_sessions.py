"""
QR session endpoints.

WHAT: Issue, validate, claim and invalidate QR tokens
WHY: Let a vendor's screen and a customer's phone meet on one session
HOW: Sync FastAPI routes over the QR session protocol
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, status

from ....models.api_schemas import IssueQRSessionRequest, ClaimQRSessionRequest
from ....models.negotiation import BidRequest
from ....models.qr_session import (
    QRPayload, QRIssueResult, QRValidation, QRClaimResult, QRSessionInfo,
)
from ....models.rate_limit import RateCategory
from ....services import qr_session_service
from ...deps import get_actor_id, rate_limited

router = APIRouter()


@router.post(
    "/qr-sessions",
    response_model=QRIssueResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limited(RateCategory.GENERAL))],
)
def issue_qr_session(request: IssueQRSessionRequest):
    """Create a token; the returned qr_content is what a renderer encodes."""
    return qr_session_service.issue(
        request.issuer_party_id,
        QRPayload(
            product_id=request.product_id,
            negotiation_id=request.negotiation_id,
            source_language=request.source_language,
            target_language=request.target_language,
        ),
        ttl_seconds=request.ttl_seconds,
        target_party_id=request.target_party_id,
    )


@router.get("/qr-sessions/{token}", response_model=QRValidation)
def validate_qr_session(token: str):
    """Read-only: could this token be claimed right now?"""
    return qr_session_service.validate(token)


@router.post(
    "/qr-sessions/{token}/claim",
    response_model=QRClaimResult,
    dependencies=[Depends(rate_limited(RateCategory.GENERAL))],
)
def claim_qr_session(token: str, request: ClaimQRSessionRequest):
    """
    Claim a token exactly once.

    409 when someone else claimed it, 410 when it just expired.
    """
    initial_bid = None
    if request.initial_bid is not None:
        initial_bid = BidRequest(
            amount=request.initial_bid.amount,
            message=request.initial_bid.message,
            language=request.initial_bid.language,
        )
    return qr_session_service.claim(
        token,
        request.claimant_party_id,
        initial_bid=initial_bid,
        target_language=request.target_language,
    )


@router.delete(
    "/qr-sessions/{token}",
    dependencies=[Depends(rate_limited(RateCategory.GENERAL))],
)
def invalidate_qr_session(token: str, actor_id: Optional[str] = Depends(get_actor_id)):
    """Retire a pending token; only its issuer may do so when X-Actor-Id is sent."""
    return {"invalidated": qr_session_service.invalidate(token, issuer_party_id=actor_id)}


@router.get("/parties/{party_id}/qr-sessions", response_model=List[QRSessionInfo])
def list_active_qr_sessions(party_id: str):
    """Pending, unexpired tokens a party has issued."""
    return qr_session_service.active_sessions_for_issuer(party_id)
