"""
Pydantic API schemas.

WHAT: Request bodies for the HTTP adapters
WHY: Reject malformed payloads before they reach the core
HOW: Pydantic v2 models; responses reuse the domain models directly
"""

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..core.models import BidderRole
from .negotiation import ResolutionOutcome
from .qr_session import SUPPORTED_LANGUAGES
from .rate_limit import RateCategory


# ========== Negotiations ==========

class CreateNegotiationRequest(BaseModel):
    """Open a negotiation with the customer's first bid."""
    customer_id: str = Field(..., min_length=1, max_length=100, description="Customer party")
    vendor_id: str = Field(..., min_length=1, max_length=100, description="Vendor party")
    product_id: str = Field(..., min_length=1, max_length=100, description="Product under negotiation")
    amount: Decimal = Field(..., description="Opening bid amount")
    bidder_role: BidderRole = Field(default=BidderRole.CUSTOMER, description="Who places the opening bid")
    message: Optional[str] = Field(default=None, max_length=2000)
    language: Optional[str] = Field(default=None, max_length=10)
    quantity: Optional[int] = Field(default=None, gt=0, description="Units to hold")
    ttl_seconds: Optional[int] = Field(default=None, gt=0, description="Negotiation lifetime")


class SubmitBidRequest(BaseModel):
    """Counter-bid from one of the two parties."""
    bidder_role: BidderRole
    amount: Decimal
    message: Optional[str] = Field(default=None, max_length=2000)
    language: Optional[str] = Field(default=None, max_length=10)


class ResolveNegotiationRequest(BaseModel):
    """Terminal decision on a negotiation."""
    outcome: ResolutionOutcome
    final_price: Optional[Decimal] = Field(default=None, description="Defaults to the latest bid")
    actor_role: Optional[BidderRole] = None


# ========== QR sessions ==========

class IssueQRSessionRequest(BaseModel):
    """Create a QR token; no product_id means a general conversation session."""
    issuer_party_id: str = Field(..., min_length=1, max_length=100)
    product_id: Optional[str] = Field(default=None, max_length=100)
    negotiation_id: Optional[str] = Field(default=None, max_length=36)
    source_language: str = Field(default="en")
    target_language: Optional[str] = None
    target_party_id: Optional[str] = Field(default=None, max_length=100)
    ttl_seconds: Optional[int] = Field(default=None, gt=0)

    @field_validator("source_language", "target_language")
    @classmethod
    def validate_language(cls, v):
        if v is not None and v not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Unsupported language: {v}")
        return v


class InitialBid(BaseModel):
    amount: Decimal
    message: Optional[str] = Field(default=None, max_length=2000)
    language: Optional[str] = Field(default=None, max_length=10)


class ClaimQRSessionRequest(BaseModel):
    """Redeem a token, optionally opening a negotiation with a first bid."""
    claimant_party_id: str = Field(..., min_length=1, max_length=100)
    target_language: Optional[str] = None
    initial_bid: Optional[InitialBid] = None


# ========== Inventory ==========

class RegisterProductRequest(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=100)
    quantity_available: int = Field(..., ge=0)


class RestockRequest(BaseModel):
    quantity: int = Field(..., gt=0)


# ========== Admin ==========

class ResetRateLimitRequest(BaseModel):
    """
    Reset rate counters.

    category + actor_key resets one counter, actor_key alone resets that
    actor everywhere, category alone or neither resets in bulk.
    """
    category: Optional[RateCategory] = None
    actor_key: Optional[str] = Field(default=None, max_length=200)


class ResetRateLimitResponse(BaseModel):
    reset: int


class MaintenanceSweepResponse(BaseModel):
    negotiations_expired: int
    reservations_released: int
    qr_sessions_expired: int
    rate_counters_purged: int
