"""Organization usage counters and activity log."""

import json
import uuid
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import case, select, update

from docqueue.database import SessionFactory, session_scope
from docqueue.models import ActivityLog, Organization
from docqueue.utils.clock import Clock, utcnow

logger = structlog.get_logger()

USAGE_FIELDS = (
    "document_count",
    "storage_used_mb",
    "ai_analyses_this_month",
    "exports_this_month",
)


class OrganizationStore:
    """Reads and writes tenant records that live in the durable store."""

    def __init__(self, session_factory: SessionFactory, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def create_organization(
        self,
        name: str,
        plan: str = "free",
        organization_id: Optional[str] = None,
    ) -> Organization:
        org = Organization(
            id=organization_id or uuid.uuid4().hex,
            name=name,
            plan=plan,
            created_at=self.clock(),
        )
        with session_scope(self.session_factory) as db:
            db.add(org)
        logger.info("Organization created", organization_id=org.id, plan=plan)
        return org

    def get_organization(self, organization_id: str) -> Optional[Organization]:
        with session_scope(self.session_factory) as db:
            return db.get(Organization, organization_id)

    def increment_usage(self, organization_id: str, field: str, delta: int) -> None:
        """Adjust a usage counter, never dropping below zero."""
        if field not in USAGE_FIELDS:
            raise ValueError(f"Unknown usage field: {field}")

        column = getattr(Organization, field)
        adjusted = case((column + delta < 0, 0), else_=column + delta)
        with session_scope(self.session_factory) as db:
            db.execute(
                update(Organization)
                .where(Organization.id == organization_id)
                .values({field: adjusted})
            )

        logger.debug("Usage incremented", organization_id=organization_id, field=field, delta=delta)

    def log_activity(
        self,
        organization_id: str,
        user_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: Optional[str] = None,
        resource_name: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> None:
        entry = ActivityLog(
            organization_id=organization_id,
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            resource_name=resource_name,
            details=json.dumps(details, default=str) if details else None,
            timestamp=self.clock(),
        )
        with session_scope(self.session_factory) as db:
            db.add(entry)

    def get_activity(
        self,
        organization_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 10_000,
    ) -> List[ActivityLog]:
        query = select(ActivityLog).where(ActivityLog.organization_id == organization_id)
        if since is not None:
            query = query.where(ActivityLog.timestamp >= since)
        if until is not None:
            query = query.where(ActivityLog.timestamp <= until)
        query = query.order_by(ActivityLog.timestamp.asc(), ActivityLog.id.asc()).limit(limit)

        with session_scope(self.session_factory) as db:
            return list(db.scalars(query))
