"""SQLAlchemy models for jobs, organizations, activity and documents."""

import json
from typing import Any, Optional

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text, text

from docqueue.database import Base

# Statuses that hold an idempotency key
KEY_HOLDING_STATUSES = ("pending", "processing", "completed")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")

SYSTEM_ORGANIZATION = "system"


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


class Job(Base):
    """
    Background job row.

    Status machine: pending -> processing -> completed | pending (retry) | failed;
    pending -> cancelled.
    """

    __tablename__ = "jobs"

    id = Column(String(32), primary_key=True)

    # content_extraction, analysis, embedding_generation, bulk_upload, data_export, ...
    job_type = Column(String(50), nullable=False)
    organization_id = Column(String(64), nullable=False, default=SYSTEM_ORGANIZATION)
    user_id = Column(String(128), nullable=True)
    subject_id = Column(String(64), nullable=True)  # Document the job acts on

    # pending, processing, completed, failed, cancelled
    status = Column(String(20), nullable=False, default="pending")

    priority = Column(Integer, nullable=False, default=5)  # Lower = serviced first
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    idempotency_key = Column(String(255), nullable=False)

    payload = Column(Text, nullable=True)  # JSON
    result = Column(Text, nullable=True)  # JSON
    error_message = Column(Text, nullable=True)

    scheduled_for = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_jobs_lease", "job_type", "status", "scheduled_for", "priority"),
        Index("idx_jobs_org_created", "organization_id", "created_at"),
        # One live job per (organization, key); failed/cancelled rows free the key
        Index(
            "idx_jobs_idempotency",
            "organization_id",
            "idempotency_key",
            unique=True,
            sqlite_where=text("status IN ('pending', 'processing', 'completed')"),
            postgresql_where=text("status IN ('pending', 'processing', 'completed')"),
        ),
    )

    def get_payload(self) -> Any:
        return _loads(self.payload)

    def get_result(self) -> Any:
        return _loads(self.result)

    @property
    def backoff_key(self) -> str:
        """Key for per-subject rate-limit backoff and failure tracking."""
        return self.subject_id or self.id

    def to_dict(self) -> dict[str, Any]:
        """Convert job to a dictionary with decoded JSON fields."""
        data = {column.name: getattr(self, column.name) for column in self.__table__.columns}
        data["payload"] = self.get_payload()
        data["result"] = self.get_result()
        return data

    def __repr__(self) -> str:
        return f"<Job(id={self.id}, type={self.job_type}, status={self.status})>"


class Organization(Base):
    """Tenant with plan tier and billing-grade usage counters."""

    __tablename__ = "organizations"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    plan = Column(String(20), nullable=False, default="free")  # free, pro, enterprise

    document_count = Column(Integer, nullable=False, default=0)
    storage_used_mb = Column(Integer, nullable=False, default=0)
    ai_analyses_this_month = Column(Integer, nullable=False, default=0)
    exports_this_month = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<Organization(id={self.id}, plan={self.plan})>"


class ActivityLog(Base):
    """Light audit trail of tenant actions."""

    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(String(64), nullable=False)
    user_id = Column(String(128), nullable=True)
    action = Column(String(100), nullable=False)
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(String(64), nullable=True)
    resource_name = Column(String(255), nullable=True)
    details = Column(Text, nullable=True)  # JSON
    timestamp = Column(DateTime, nullable=False)

    __table_args__ = (Index("idx_activity_org_time", "organization_id", "timestamp"),)

    def get_details(self) -> Any:
        return _loads(self.details)


class Document(Base):
    """Stored document plus the AI analysis and embeddings derived from it."""

    __tablename__ = "documents"

    id = Column(String(32), primary_key=True)
    organization_id = Column(String(64), nullable=False)
    user_id = Column(String(128), nullable=True)
    name = Column(String(500), nullable=False)
    storage_key = Column(String(1024), nullable=True)
    mime_type = Column(String(255), nullable=True)
    size_bytes = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="active")  # active, trashed

    content = Column(Text, nullable=True)
    content_extracted = Column(Boolean, nullable=False, default=False)

    ai_summary = Column(Text, nullable=True)
    ai_key_topics = Column(Text, nullable=True)  # JSON list
    ai_document_type = Column(String(100), nullable=True)
    ai_category = Column(String(100), nullable=True)
    ai_concise_name = Column(String(255), nullable=True)
    ai_category_confidence = Column(Float, nullable=True)
    ai_document_type_confidence = Column(Float, nullable=True)
    ai_word_count = Column(Integer, nullable=True)
    ai_analyzed_at = Column(DateTime, nullable=True)

    title_embedding = Column(Text, nullable=True)
    content_embedding = Column(Text, nullable=True)
    summary_embedding = Column(Text, nullable=True)
    key_topics_embedding = Column(Text, nullable=True)
    embeddings_generated = Column(Boolean, nullable=False, default=False)
    embeddings_generated_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=True)
    trashed_at = Column(DateTime, nullable=True)

    __table_args__ = (Index("idx_documents_org", "organization_id", "status"),)

    @property
    def key_topics(self) -> list[str]:
        return _loads(self.ai_key_topics) or []

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, name={self.name})>"
