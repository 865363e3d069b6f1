"""Retry and rate-limit backoff decisions."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import structlog

from docqueue.utils.clock import Clock, utcnow

logger = structlog.get_logger()


@dataclass
class BackoffEntry:
    delay_seconds: int
    next_retry_at: datetime


@dataclass
class RetryDecision:
    """Outcome of an ordinary (non rate-limit) failure."""

    attempts: int
    terminal: bool
    delay_seconds: int = 0


class BackoffTracker:
    """Doubling backoff per subject for provider rate-limit errors.

    Keyed by document id when the job has one, else by job id.
    """

    def __init__(self, initial_backoff: int = 5, max_backoff: int = 300, clock: Clock = utcnow):
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.clock = clock
        self._entries: Dict[str, BackoffEntry] = {}

    def on_rate_limited(self, key: str, retry_after: Optional[float] = None) -> int:
        """Register a rate-limit hit and return the delay in seconds."""
        entry = self._entries.get(key)
        if entry is None:
            delay = self.initial_backoff
        else:
            delay = min(entry.delay_seconds * 2, self.max_backoff)

        # Honour a provider hint without shrinking the schedule
        if retry_after is not None:
            delay = min(max(delay, int(retry_after)), self.max_backoff)

        self._entries[key] = BackoffEntry(delay, self.clock() + timedelta(seconds=delay))
        return delay

    def clear(self, key: str) -> None:
        self._entries.pop(key, None)

    def get_delay(self, key: str) -> Optional[int]:
        entry = self._entries.get(key)
        return entry.delay_seconds if entry else None

    def active_keys(self) -> List[str]:
        """Keys whose next retry is still in the future."""
        now = self.clock()
        return [key for key, entry in self._entries.items() if entry.next_retry_at > now]

    def prune(self, idle: timedelta = timedelta(hours=1)) -> int:
        """Forget entries whose retry time passed more than ``idle`` ago."""
        cutoff = self.clock() - idle
        expired = [key for key, entry in self._entries.items() if entry.next_retry_at < cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class FailureTracker:
    """Counts ordinary failures per subject to catch deterministic failures early.

    A subject that fails `threshold` times within `window` of its first
    failure is treated as a poison pill and failed without further retries.
    """

    def __init__(self, threshold: int = 3, window: timedelta = timedelta(seconds=60), clock: Clock = utcnow):
        self.threshold = threshold
        self.window = window
        self.clock = clock
        self._counts: Dict[str, int] = {}
        self._first_failure: Dict[str, datetime] = {}

    def record(self, key: str) -> bool:
        """Count one failure; returns True when the subject is now a poison pill."""
        now = self.clock()
        first = self._first_failure.get(key)
        if first is None or now - first > self.window:
            self._first_failure[key] = now
            self._counts[key] = 0

        self._counts[key] += 1
        return self._counts[key] >= self.threshold

    def clear(self, key: str) -> None:
        self._counts.pop(key, None)
        self._first_failure.pop(key, None)

    def prune(self) -> int:
        """Forget subjects whose failure window has closed."""
        cutoff = self.clock() - self.window
        expired = [key for key, first in self._first_failure.items() if first < cutoff]
        for key in expired:
            self.clear(key)
        return len(expired)

    def __len__(self) -> int:
        return len(self._counts)


class RetryPolicy:
    """Escalating fixed delays for ordinary failures, doubling backoff for rate limits."""

    def __init__(
        self,
        retry_delays: Sequence[int] = (30, 120, 300),
        initial_backoff: int = 5,
        max_backoff: int = 300,
        poison_threshold: int = 3,
        poison_window_seconds: int = 60,
        clock: Clock = utcnow,
    ):
        if not retry_delays:
            raise ValueError("retry_delays must not be empty")

        self.retry_delays = list(retry_delays)
        self.clock = clock
        self.backoff = BackoffTracker(initial_backoff, max_backoff, clock)
        self.failures = FailureTracker(poison_threshold, timedelta(seconds=poison_window_seconds), clock)

    def retry_delay(self, attempts: int) -> int:
        """Delay before retry number ``attempts`` (1-based); the last delay repeats."""
        index = min(max(attempts, 1), len(self.retry_delays)) - 1
        return self.retry_delays[index]

    def on_failure(self, attempts: int, max_attempts: int) -> RetryDecision:
        """Count a failed attempt.

        Args:
            attempts: Attempts already recorded on the job before this failure
            max_attempts: Job's attempt limit

        Returns:
            RetryDecision with the new attempt count; terminal once it exceeds max_attempts
        """
        new_attempts = attempts + 1
        if new_attempts > max_attempts:
            return RetryDecision(attempts=new_attempts, terminal=True)
        return RetryDecision(
            attempts=new_attempts,
            terminal=False,
            delay_seconds=self.retry_delay(new_attempts),
        )

    def on_rate_limited(self, key: str, retry_after: Optional[float] = None) -> int:
        return self.backoff.on_rate_limited(key, retry_after)

    def on_success(self, key: str) -> None:
        self.backoff.clear(key)
        self.failures.clear(key)
