"""
Admin endpoints.

WHAT: Rate-limit inspection/reset and on-demand maintenance sweeps
WHY: Operators unblock throttled actors without restarting the service
HOW: Sync FastAPI routes over the rate governor and maintenance scheduler
"""

from fastapi import APIRouter

from ....models.api_schemas import (
    ResetRateLimitRequest,
    ResetRateLimitResponse,
    MaintenanceSweepResponse,
)
from ....models.rate_limit import RateCategory, RateLimitStatus
from ....services import rate_governor, maintenance_scheduler
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("/admin/rate-limits/{category}/{actor_key}", response_model=RateLimitStatus)
def rate_limit_status(category: RateCategory, actor_key: str):
    """Usage of the current window; does not count as a request."""
    return rate_governor.status(category, actor_key)


@router.post("/admin/rate-limits/reset", response_model=ResetRateLimitResponse)
def reset_rate_limits(request: ResetRateLimitRequest):
    """
    Reset rate counters.

    WHAT: Forget counters for one key, one actor, one category, or everything
    WHY: Unblock a legitimate caller that hit a limit
    HOW: Pick the narrowest governor reset the request allows
    """
    if request.category and request.actor_key:
        count = int(rate_governor.reset(request.category, request.actor_key))
    elif request.actor_key:
        count = rate_governor.reset_actor(request.actor_key)
    else:
        count = rate_governor.reset_all(request.category)

    logger.info(f"Admin rate-limit reset: {count} counters")
    return ResetRateLimitResponse(reset=count)


@router.post("/admin/maintenance/sweep", response_model=MaintenanceSweepResponse)
def run_maintenance_sweep():
    """Run every expiry sweep now instead of waiting for the scheduler."""
    return MaintenanceSweepResponse(**maintenance_scheduler.run_once())
