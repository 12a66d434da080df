"""
Rate governor.

WHAT: Fixed-window request quotas per (category, actor)
WHY: Throttle abusive callers before any mutating operation runs
HOW: One rate_counters row per key; each allow() is a sequence of conditional
     UPDATEs (restart elapsed window, else increment below limit) under a keyed lock
"""

import math
from datetime import datetime, timedelta
from typing import Optional, Tuple, Union

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError

from ..core.clock import Clock, utcnow
from ..core.config import settings
from ..core.database import use_db
from ..core.locks import KeyedLock
from ..core.models import RateCounter
from ..models.rate_limit import RateCategory, RateLimitStatus
from ..utils.exceptions import RateLimitedException, ValidationException
from ..utils.logger import get_logger

logger = get_logger(__name__)

Category = Union[RateCategory, str]


class RateGovernor:
    """
    Count and throttle requests.

    Counters are independent rows, so traffic for one actor never waits on
    another actor's counter.
    """

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock
        self._locks = KeyedLock("rate")

    def allow(
        self,
        category: Category,
        actor_key: str,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> bool:
        """
        Record one request and say whether it is within quota.

        A denied request does not increment the counter.

        Args:
            category: Rate category (see RateCategory)
            actor_key: Caller identity (actor id or client address)
            limit: Requests per window; defaults to the category's configured max
            window_seconds: Window length; defaults to the category's configured window

        Returns:
            True if allowed, False if the quota for the current window is used up
        """
        category, limit, window = self._quota(category, limit, window_seconds)

        with self._locks.hold(f"{category}:{actor_key}"), use_db() as s:
            now = self.clock()

            restarted = s.execute(
                update(RateCounter)
                .where(
                    RateCounter.category == category,
                    RateCounter.actor_key == actor_key,
                    RateCounter.window_expires_at <= now,
                )
                .values(
                    count=1,
                    limit=limit,
                    window_duration_seconds=window,
                    window_start=now,
                    window_expires_at=now + timedelta(seconds=window),
                )
                .execution_options(synchronize_session=False)
            )
            if restarted.rowcount == 1:
                return True

            if self._increment(s, category, actor_key, limit):
                return True

            if s.get(RateCounter, (category, actor_key)) is not None:
                logger.warning(f"Rate limit hit: {category} for {actor_key} ({limit}/{window}s)")
                return False

            try:
                with s.begin_nested():
                    s.add(RateCounter(
                        category=category,
                        actor_key=actor_key,
                        count=1,
                        limit=limit,
                        window_duration_seconds=window,
                        window_start=now,
                        window_expires_at=now + timedelta(seconds=window),
                    ))
                return True
            except IntegrityError:
                # Another process created the row first
                return self._increment(s, category, actor_key, limit)

    def check(
        self,
        category: Category,
        actor_key: str,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> RateLimitStatus:
        """
        allow() that raises instead of returning False.

        Raises:
            RateLimitedException: quota used up; carries retry_after seconds
        """
        if self.allow(category, actor_key, limit, window_seconds):
            return self.status(category, actor_key, limit, window_seconds)

        status = self.status(category, actor_key, limit, window_seconds)
        retry_after = 1
        if status.reset_at is not None:
            retry_after = max(1, math.ceil((status.reset_at - self.clock()).total_seconds()))
        raise RateLimitedException(status.category, actor_key, status.limit, retry_after)

    def status(
        self,
        category: Category,
        actor_key: str,
        limit: Optional[int] = None,
        window_seconds: Optional[int] = None,
    ) -> RateLimitStatus:
        """Usage of the current window without counting a request."""
        category, limit, _ = self._quota(category, limit, window_seconds)

        with use_db() as s:
            counter = s.get(RateCounter, (category, actor_key))
            if counter is None or counter.window_expires_at <= self.clock():
                return RateLimitStatus(
                    category=category,
                    actor_key=actor_key,
                    count=0,
                    limit=limit,
                    remaining=limit,
                )
            return RateLimitStatus(
                category=category,
                actor_key=actor_key,
                count=counter.count,
                limit=limit,
                remaining=max(0, limit - counter.count),
                window_start=counter.window_start,
                reset_at=counter.window_expires_at,
            )

    def reset(self, category: Category, actor_key: str) -> bool:
        """Forget one counter. Resetting a missing key is a no-op."""
        category = self._category_name(category)
        with self._locks.hold(f"{category}:{actor_key}"), use_db() as s:
            result = s.execute(
                delete(RateCounter)
                .where(RateCounter.category == category, RateCounter.actor_key == actor_key)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info(f"Reset {category} rate limit for {actor_key}")
        return bool(result.rowcount)

    def reset_actor(self, actor_key: str) -> int:
        """Forget every category's counter for one actor."""
        with use_db() as s:
            categories = s.scalars(
                select(RateCounter.category).where(RateCounter.actor_key == actor_key)
            ).all()
        return sum(1 for category in categories if self.reset(category, actor_key))

    def reset_all(self, category: Optional[Category] = None) -> int:
        """Forget all counters, or all counters of one category."""
        with use_db() as s:
            query = delete(RateCounter)
            if category is not None:
                query = query.where(RateCounter.category == self._category_name(category))
            result = s.execute(query.execution_options(synchronize_session=False))
        logger.info(f"Reset {result.rowcount} rate counters" + (f" in {category}" if category else ""))
        return result.rowcount

    def purge_elapsed(self, now: Optional[datetime] = None) -> int:
        """Delete counters whose window has ended; they carry no information."""
        now = now or self.clock()
        with use_db() as s:
            result = s.execute(
                delete(RateCounter)
                .where(RateCounter.window_expires_at <= now)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info(f"Purged {result.rowcount} elapsed rate counters")
        return result.rowcount

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _category_name(category: Category) -> str:
        return category.value if isinstance(category, RateCategory) else str(category)

    def _quota(
        self, category: Category, limit: Optional[int], window_seconds: Optional[int]
    ) -> Tuple[str, int, int]:
        name = self._category_name(category)
        if limit is None or window_seconds is None:
            try:
                default_limit, default_window = settings.get_rate_limit(name)
            except KeyError:
                raise ValidationException(
                    f"Unknown rate category: {name}",
                    field_errors=[{"field": "category", "error": "unknown"}]
                ) from None
            limit = default_limit if limit is None else limit
            window_seconds = default_window if window_seconds is None else window_seconds

        if limit < 1 or window_seconds < 1:
            raise ValidationException("limit and window_seconds must be >= 1")
        return name, limit, window_seconds

    @staticmethod
    def _increment(s, category: str, actor_key: str, limit: int) -> bool:
        result = s.execute(
            update(RateCounter)
            .where(
                RateCounter.category == category,
                RateCounter.actor_key == actor_key,
                RateCounter.count < limit,
            )
            .values(count=RateCounter.count + 1, limit=limit)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
