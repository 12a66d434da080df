"""
Inventory domain models.

WHAT: Stock levels, reservations, and ledger statistics
WHY: Consistent typing between the ledger, the state machine, and the API
HOW: Pydantic v2 models built from ORM rows
"""

from datetime import datetime

from pydantic import BaseModel, Field, computed_field


class StockLevel(BaseModel):
    """Available and reserved units for a product."""

    product_id: str
    quantity_available: int = Field(ge=0)
    quantity_reserved: int = Field(ge=0)

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def quantity_unreserved(self) -> int:
        return self.quantity_available - self.quantity_reserved


class ReservationInfo(BaseModel):
    """A hold on product units."""

    reservation_id: str
    product_id: str
    quantity: int = Field(ge=1)
    holder_id: str
    created_at: datetime
    expires_at: datetime

    model_config = {"from_attributes": True}


class HolderCount(BaseModel):
    holder_id: str
    count: int


class LedgerStats(BaseModel):
    """Reservation counts for operators."""

    active_reservations: int
    expired_unswept: int
    units_reserved: int
    top_holders: list[HolderCount] = Field(default_factory=list)
