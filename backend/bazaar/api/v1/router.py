"""
API v1 router aggregation.

WHAT: Combine all v1 endpoint routers
WHY: Single place to register all API routes
HOW: Include routers from endpoints with prefixes
"""

from fastapi import APIRouter

from .endpoints import status, negotiation, qr_sessions, inventory, admin

# Create main v1 router
api_router = APIRouter()

# Include endpoint routers
api_router.include_router(
    status.router,
    prefix="/api/v1",
    tags=["status"]
)

api_router.include_router(
    negotiation.router,
    prefix="/api/v1",
    tags=["negotiation"]
)

api_router.include_router(
    qr_sessions.router,
    prefix="/api/v1",
    tags=["qr-sessions"]
)

api_router.include_router(
    inventory.router,
    prefix="/api/v1",
    tags=["inventory"]
)

api_router.include_router(
    admin.router,
    prefix="/api/v1",
    tags=["admin"]
)
