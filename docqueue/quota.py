"""Per-tenant admission limits and plan quotas."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

import structlog

from docqueue.errors import NotFoundError, QuotaExceededError
from docqueue.models import SYSTEM_ORGANIZATION
from docqueue.organizations import OrganizationStore
from docqueue.utils.clock import Clock, utcnow

logger = structlog.get_logger()

# Plan tier -> dimension -> limit
PLAN_LIMITS: Dict[str, Dict[str, int]] = {
    "free": {"ai_analyses": 100, "storage_mb": 1000, "exports": 5},
    "pro": {"ai_analyses": 1000, "storage_mb": 50000, "exports": 50},
    "enterprise": {"ai_analyses": 10000, "storage_mb": 512000, "exports": 500},
}

# Job type -> (plan dimension, organization usage field)
JOB_TYPE_DIMENSIONS: Dict[str, tuple] = {
    "analysis": ("ai_analyses", "ai_analyses_this_month"),
    "bulk_upload": ("storage_mb", "storage_used_mb"),
    "data_export": ("exports", "exports_this_month"),
}

HOUR = timedelta(hours=1)
DAY = timedelta(hours=24)


@dataclass
class TenantWindow:
    """Admission counters for one organization."""

    hour_count: int
    day_count: int
    last_hour_reset: datetime
    last_day_reset: datetime
    last_seen: datetime


class TenantQuotaGuard:
    """
    Admission-rate limits plus plan quota checks.

    The in-memory windows are separate from the billing counters stored on
    the organization row and are lost on restart.
    """

    def __init__(
        self,
        organizations: OrganizationStore,
        max_per_org_per_hour: int = 100,
        max_per_org_per_day: int = 1000,
        stale_after: timedelta = timedelta(hours=25),
        clock: Clock = utcnow,
    ):
        self.organizations = organizations
        self.max_per_org_per_hour = max_per_org_per_hour
        self.max_per_org_per_day = max_per_org_per_day
        self.stale_after = stale_after
        self.clock = clock
        self._windows: Dict[str, TenantWindow] = {}

    def check_admission(self, organization_id: str) -> None:
        """Count one enqueue against the tenant's hourly and daily windows.

        Only called at enqueue time. Raises QuotaExceededError without
        touching the counters when either window is full.
        """
        if organization_id == SYSTEM_ORGANIZATION:
            return

        now = self.clock()
        window = self._windows.get(organization_id)
        if window is None:
            window = TenantWindow(0, 0, now, now, now)
            self._windows[organization_id] = window

        if now - window.last_hour_reset >= HOUR:
            window.hour_count = 0
            window.last_hour_reset = now
        if now - window.last_day_reset >= DAY:
            window.day_count = 0
            window.last_day_reset = now
        window.last_seen = now

        if window.hour_count >= self.max_per_org_per_hour:
            logger.warning(
                "Hourly job limit reached",
                organization_id=organization_id,
                count=window.hour_count,
            )
            raise QuotaExceededError(
                organization_id, "jobs_per_hour", window.hour_count, self.max_per_org_per_hour
            )
        if window.day_count >= self.max_per_org_per_day:
            logger.warning(
                "Daily job limit reached",
                organization_id=organization_id,
                count=window.day_count,
            )
            raise QuotaExceededError(
                organization_id, "jobs_per_day", window.day_count, self.max_per_org_per_day
            )

        window.hour_count += 1
        window.day_count += 1

    def release_admission(self, organization_id: str) -> None:
        """Give back one admission when the enqueue it was counted for did not persist."""
        window = self._windows.get(organization_id)
        if window is None:
            return

        window.hour_count = max(0, window.hour_count - 1)
        window.day_count = max(0, window.day_count - 1)

    def check_plan_quota(self, organization_id: str, job_type: str) -> None:
        """Read-only check of the tenant's plan limit for this job type."""
        if organization_id == SYSTEM_ORGANIZATION:
            return

        mapping = JOB_TYPE_DIMENSIONS.get(job_type)
        if mapping is None:
            return
        dimension, usage_field = mapping

        org = self.organizations.get_organization(organization_id)
        if org is None:
            raise NotFoundError("Organization", organization_id)

        limits = PLAN_LIMITS.get(org.plan) or PLAN_LIMITS["free"]
        limit = limits[dimension]
        usage = getattr(org, usage_field) or 0

        if usage >= limit:
            raise QuotaExceededError(organization_id, dimension, usage, limit)

    def sweep_stale(self) -> int:
        """Drop windows for tenants idle longer than ``stale_after``."""
        cutoff = self.clock() - self.stale_after
        stale = [org_id for org_id, w in self._windows.items() if w.last_seen < cutoff]
        for org_id in stale:
            del self._windows[org_id]

        if stale:
            logger.info("Swept stale tenant windows", count=len(stale))
        return len(stale)

    def get_usage(self, organization_id: str) -> Optional[dict]:
        window = self._windows.get(organization_id)
        if window is None:
            return None
        return {
            "hour_count": window.hour_count,
            "day_count": window.day_count,
            "last_hour_reset": window.last_hour_reset.isoformat(),
            "last_day_reset": window.last_day_reset.isoformat(),
        }

    @property
    def tracked_tenants(self) -> int:
        return len(self._windows)
