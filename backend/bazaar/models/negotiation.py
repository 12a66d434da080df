"""
Negotiation domain models.

WHAT: Read models for negotiations and bids returned by the state machine
WHY: Callers get plain validated values, never live ORM rows
HOW: Pydantic v2 models built from ORM instances (from_attributes)
"""

from decimal import Decimal
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from ..core.models import NegotiationStatus, BidderRole


class BidRequest(BaseModel):
    """A bid as submitted by a caller (before it gets a sequence number)."""

    amount: Decimal
    bidder_role: BidderRole = BidderRole.CUSTOMER
    message: str | None = Field(default=None, max_length=2000)
    language: str | None = Field(default=None, max_length=10)


class BidRecord(BaseModel):
    """A recorded, immutable bid."""

    sequence_number: int = Field(ge=1)
    bidder_role: BidderRole
    amount: Decimal
    message: str | None = None
    language: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True, "frozen": True}


class NegotiationState(BaseModel):
    """Snapshot of a negotiation and its bid history."""

    negotiation_id: str
    customer_id: str
    vendor_id: str
    product_id: str
    status: NegotiationStatus
    bids: list[BidRecord] = Field(default_factory=list)
    final_price: Decimal | None = None
    reservation_id: str | None = None
    source_qr_session_id: str | None = None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    resolved_at: datetime | None = None
    resolved_by_role: str | None = None

    model_config = {"from_attributes": True}

    @field_validator("bids")
    @classmethod
    def bids_in_sequence_order(cls, v: list[BidRecord]) -> list[BidRecord]:
        """Bid history is always presented in ascending sequence order."""
        return sorted(v, key=lambda b: b.sequence_number)

    @property
    def current_offer(self) -> BidRecord | None:
        """The most recent bid supersedes all earlier ones."""
        return self.bids[-1] if self.bids else None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


ResolutionOutcome = Literal["accept", "reject", "cancel"]
