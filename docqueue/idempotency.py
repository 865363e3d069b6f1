"""Duplicate-enqueue protection keyed by (organization, idempotency key)."""

from datetime import timedelta
from typing import Set, Tuple

import structlog

from docqueue.errors import DuplicateJobError
from docqueue.utils.clock import Clock, utcnow

logger = structlog.get_logger()


class IdempotencyRegistry:
    """
    Rejects a second enqueue for a key that already holds a live job.

    Two layers:
    - the durable store (pending, processing or completed rows hold the key)
    - a short-lived in-memory set of recently admitted keys, cleared wholesale
      every ``clear_interval`` seconds
    """

    def __init__(self, store, clear_interval: int = 600, clock: Clock = utcnow):
        self.store = store
        self.clear_interval = timedelta(seconds=clear_interval)
        self.clock = clock
        self._recent: Set[Tuple[str, str]] = set()
        self._last_clear = clock()

    def reserve(self, organization_id: str, key: str) -> None:
        """Raise DuplicateJobError if the key is already taken."""
        if (organization_id, key) in self._recent:
            raise DuplicateJobError(organization_id, key)

        existing = self.store.find_active_by_key(organization_id, key)
        if existing is not None:
            raise DuplicateJobError(organization_id, key, job_id=existing.id)

    def remember(self, organization_id: str, key: str) -> None:
        """Record a key once its job row has been written."""
        self._recent.add((organization_id, key))

    def release(self, organization_id: str, key: str) -> None:
        """Free a key whose job ended failed or cancelled."""
        self._recent.discard((organization_id, key))

    def expire_if_due(self) -> bool:
        now = self.clock()
        if now - self._last_clear < self.clear_interval:
            return False

        if self._recent:
            logger.debug("Clearing recent idempotency keys", count=len(self._recent))
        self._recent.clear()
        self._last_clear = now
        return True

    def __len__(self) -> int:
        return len(self._recent)
