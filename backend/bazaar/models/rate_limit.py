"""Rate governor domain models."""

import enum
from datetime import datetime

from pydantic import BaseModel


class RateCategory(str, enum.Enum):
    """Traffic categories with independently configured quotas."""
    AUTH = "auth"
    GENERAL = "general"
    VOICE = "voice"
    UPLOAD = "upload"
    NEGOTIATION = "negotiation"
    PAYMENT = "payment"
    TRANSLATION = "translation"


class RateLimitStatus(BaseModel):
    """Current window for one (category, actor) key."""

    category: str
    actor_key: str
    count: int
    limit: int
    remaining: int
    window_start: datetime | None = None
    reset_at: datetime | None = None
