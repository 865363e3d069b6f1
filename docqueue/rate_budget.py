"""Shared AI provider budget: per-minute token bucket plus a hard daily ceiling.

All methods are synchronous. Check-and-decrement happens without a suspension
point, so two pools on the same event loop can never both observe the last
token.
"""

from datetime import date, datetime, timedelta
from typing import Any, Dict

import structlog

from docqueue.utils.clock import Clock, utcnow

logger = structlog.get_logger()

MS_PER_MINUTE = 60_000


class RateBudget:
    """
    Token bucket for calls to the external AI provider.

    - ``tokens`` refill at ``per_minute_limit`` per minute, capped at the limit
    - ``daily_count`` tracks calls made today (UTC) and resets lazily on rollover
    - Never persisted; a restart begins with a full bucket
    """

    def __init__(
        self,
        per_minute_limit: int = 15,
        daily_limit: int = 1200,
        clock: Clock = utcnow,
    ):
        if per_minute_limit <= 0:
            raise ValueError("per_minute_limit must be positive")

        self.per_minute_limit = per_minute_limit
        self.daily_limit = daily_limit
        self.clock = clock

        now = clock()
        self.tokens = per_minute_limit
        self.last_refill: datetime = now
        self.daily_count = 0
        self._day: date = now.date()

    def refill(self) -> int:
        """Add tokens for the time elapsed since the last refill.

        ``last_refill`` only moves when at least one token was added, so
        frequent calls never starve the bucket.

        Returns:
            Number of tokens added before capping
        """
        now = self.clock()
        elapsed_ms = (now - self.last_refill) // timedelta(milliseconds=1)
        # floor(elapsed / (60s / limit)) without float rounding
        tokens_to_add = max(0, elapsed_ms * self.per_minute_limit // MS_PER_MINUTE)

        if tokens_to_add > 0:
            self.tokens = min(self.per_minute_limit, self.tokens + tokens_to_add)
            self.last_refill = now

        return tokens_to_add

    def try_consume(self) -> bool:
        """Take one token if both the minute bucket and the daily ceiling allow it."""
        if not self.has_daily_capacity():
            logger.debug(
                "Daily provider ceiling reached",
                daily_count=self.daily_count,
                daily_limit=self.daily_limit,
            )
            return False

        if self.tokens > 0:
            self.tokens -= 1
            return True
        return False

    def refund(self) -> None:
        """Return a token taken for a lease that found no work."""
        self.tokens = min(self.per_minute_limit, self.tokens + 1)

    def record_daily_usage(self, calls: int) -> None:
        """Count provider calls that actually happened (0 for skipped work)."""
        if calls < 0:
            raise ValueError("calls must be non-negative")

        self._roll_day()
        self.daily_count += calls

    def has_daily_capacity(self) -> bool:
        self._roll_day()
        return self.daily_count < self.daily_limit

    def _roll_day(self) -> None:
        today = self.clock().date()
        if today != self._day:
            logger.info(
                "Provider daily budget reset",
                previous_day=self._day.isoformat(),
                calls=self.daily_count,
            )
            self._day = today
            self.daily_count = 0

    def get_status(self) -> Dict[str, Any]:
        self._roll_day()
        return {
            "tokens": self.tokens,
            "per_minute_limit": self.per_minute_limit,
            "daily_count": self.daily_count,
            "daily_limit": self.daily_limit,
            "daily_capacity": self.daily_count < self.daily_limit,
        }
