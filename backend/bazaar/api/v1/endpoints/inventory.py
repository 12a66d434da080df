"""
Inventory endpoints.

WHAT: Stock records and reservation visibility
WHY: Vendors register and restock products; operators watch holds
HOW: Sync FastAPI routes over the resource ledger
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, status

from ....models.api_schemas import RegisterProductRequest, RestockRequest
from ....models.inventory import StockLevel, ReservationInfo, LedgerStats
from ....models.rate_limit import RateCategory
from ....services import resource_ledger
from ...deps import rate_limited

router = APIRouter()


@router.post(
    "/inventory/products",
    response_model=StockLevel,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limited(RateCategory.GENERAL))],
)
def register_product(request: RegisterProductRequest):
    """Create a stock record or overwrite its available quantity."""
    return resource_ledger.register_product(request.product_id, request.quantity_available)


@router.get("/inventory/products/{product_id}", response_model=StockLevel)
def get_product_stock(product_id: str):
    return resource_ledger.get_stock(product_id)


@router.post(
    "/inventory/products/{product_id}/restock",
    response_model=StockLevel,
    dependencies=[Depends(rate_limited(RateCategory.GENERAL))],
)
def restock_product(product_id: str, request: RestockRequest):
    return resource_ledger.restock(product_id, request.quantity)


@router.get("/inventory/reservations", response_model=List[ReservationInfo])
def list_reservations(holder_id: Optional[str] = None):
    """Unexpired holds, newest first."""
    return resource_ledger.active_reservations(holder_id)


@router.get("/inventory/stats", response_model=LedgerStats)
def ledger_stats():
    return resource_ledger.stats()
