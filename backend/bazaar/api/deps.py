"""
Shared FastAPI dependencies.

WHAT: Caller identity and rate-limit guards for the v1 routes
WHY: Every mutating route is throttled per (category, actor) before it runs
HOW: Depends() factories over the rate governor singleton
"""

from typing import Optional

from fastapi import Depends, Header, Request, Response

from ..core.config import settings
from ..models.rate_limit import RateCategory
from ..services import rate_governor


def get_actor_id(x_actor_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Identity asserted by the upstream auth gateway, if any."""
    return x_actor_id or None


def get_actor_key(request: Request, actor_id: Optional[str] = Depends(get_actor_id)) -> str:
    """Rate-limit key: the actor id, else the client address."""
    if actor_id:
        return actor_id
    return request.client.host if request.client else "unknown"


def rate_limited(category: RateCategory):
    """
    Build a dependency that counts the request against ``category``.

    Raises RateLimitedException (429) once the actor's quota is used up and
    reports the window in X-RateLimit-* headers otherwise.
    """
    def dependency(response: Response, actor_key: str = Depends(get_actor_key)):
        if not settings.RATE_LIMIT_ENABLED:
            return
        status = rate_governor.check(category, actor_key)
        response.headers["X-RateLimit-Limit"] = str(status.limit)
        response.headers["X-RateLimit-Remaining"] = str(status.remaining)
        if status.reset_at is not None:
            response.headers["X-RateLimit-Reset"] = status.reset_at.isoformat()

    return dependency
