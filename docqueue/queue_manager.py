"""Durable job store with atomic leasing."""

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from docqueue.database import SessionFactory, session_scope
from docqueue.errors import DuplicateJobError
from docqueue.models import KEY_HOLDING_STATUSES, TERMINAL_STATUSES, Job
from docqueue.utils.clock import Clock, utcnow

logger = structlog.get_logger()


class JobStore:
    """Job table access. Every operation runs in its own session."""

    def __init__(self, session_factory: SessionFactory, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def enqueue(
        self,
        job_type: str,
        organization_id: str,
        idempotency_key: str,
        user_id: Optional[str] = None,
        subject_id: Optional[str] = None,
        payload: Optional[dict] = None,
        priority: int = 5,
        max_attempts: int = 3,
        scheduled_for: Optional[datetime] = None,
    ) -> str:
        """Add a job to the queue.

        Args:
            job_type: Registered job type
            organization_id: Owning tenant ("system" for housekeeping)
            idempotency_key: Key unique per tenant among live jobs
            user_id: Acting user, for audit
            subject_id: Document the job acts on
            payload: Processor-specific data as JSON
            priority: Lower = processed first (default 5)
            max_attempts: Retry limit
            scheduled_for: When to process (default now)

        Returns:
            Job ID

        Raises:
            DuplicateJobError: If a live job already holds the key
        """
        now = self.clock()
        job = Job(
            id=uuid.uuid4().hex,
            job_type=job_type,
            organization_id=organization_id,
            user_id=user_id,
            subject_id=subject_id,
            status="pending",
            priority=priority,
            attempts=0,
            max_attempts=max_attempts,
            idempotency_key=idempotency_key,
            payload=json.dumps(payload, default=str) if payload is not None else None,
            scheduled_for=scheduled_for or now,
            created_at=now,
            updated_at=now,
        )

        try:
            with session_scope(self.session_factory) as db:
                db.add(job)
        except IntegrityError as e:
            raise DuplicateJobError(organization_id, idempotency_key) from e

        logger.info(
            "Job enqueued",
            job_id=job.id,
            job_type=job_type,
            organization_id=organization_id,
            priority=priority,
        )
        return job.id

    def lease_next(
        self,
        job_type: str,
        limit: int,
        exclude: Iterable[str] = (),
    ) -> List[Job]:
        """Claim up to ``limit`` due pending jobs of one type.

        Candidates are ordered by priority, then age. Jobs whose id or
        subject is in ``exclude`` are left pending. Each claim is a
        conditional update on status, so a row can only be leased once.
        """
        if limit <= 0:
            return []

        now = self.clock()
        excluded = list(set(exclude))

        query = select(Job.id).where(
            Job.job_type == job_type,
            Job.status == "pending",
            Job.scheduled_for <= now,
        )
        if excluded:
            query = query.where(
                Job.id.notin_(excluded),
                or_(Job.subject_id.is_(None), Job.subject_id.notin_(excluded)),
            )
        query = query.order_by(Job.priority.asc(), Job.created_at.asc(), Job.id.asc())

        leased: List[Job] = []
        with session_scope(self.session_factory) as db:
            # Over-fetch so rows lost to a concurrent claim don't shrink the batch
            candidates = list(db.scalars(query.limit(limit * 2)))

            for job_id in candidates:
                if len(leased) >= limit:
                    break

                result = db.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == "pending")
                    .values(status="processing", started_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue

                leased.append(db.get(Job, job_id, populate_existing=True))

        for job in leased:
            logger.info(
                "Job leased",
                job_id=job.id,
                job_type=job.job_type,
                organization_id=job.organization_id,
                attempt=job.attempts,
            )
        return leased

    def update_status(self, job_id: str, status: str, **fields: Any) -> bool:
        """Set status plus any other columns in one statement."""
        values: Dict[str, Any] = {"status": status, "updated_at": self.clock()}
        for name, value in fields.items():
            if name in ("payload", "result") and value is not None and not isinstance(value, str):
                value = json.dumps(value, default=str)
            values[name] = value

        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(Job)
                .where(Job.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def get(self, job_id: str) -> Optional[Job]:
        with session_scope(self.session_factory) as db:
            return db.get(Job, job_id)

    def find_active_by_key(self, organization_id: str, idempotency_key: str) -> Optional[Job]:
        """Return the job holding this key, if any (pending, processing or completed)."""
        query = select(Job).where(
            Job.organization_id == organization_id,
            Job.idempotency_key == idempotency_key,
            Job.status.in_(KEY_HOLDING_STATUSES),
        )
        with session_scope(self.session_factory) as db:
            return db.scalars(query.limit(1)).first()

    def complete(self, job_id: str, result: Any = None) -> None:
        now = self.clock()
        self.update_status(job_id, "completed", result=result, completed_at=now, error_message=None)
        logger.info("Job completed", job_id=job_id)

    def schedule_retry(self, job_id: str, attempts: int, delay_seconds: int, error: str) -> datetime:
        """Return a failed attempt to pending with a delay."""
        next_attempt = self.clock() + timedelta(seconds=delay_seconds)
        self.update_status(
            job_id,
            "pending",
            attempts=attempts,
            scheduled_for=next_attempt,
            error_message=error,
            started_at=None,
        )
        logger.info(
            "Job scheduled for retry",
            job_id=job_id,
            attempt=attempts,
            delay_seconds=delay_seconds,
            next_attempt=next_attempt.isoformat(),
        )
        return next_attempt

    def defer(self, job_id: str, delay_seconds: int, reason: str) -> datetime:
        """Push a job back to pending without touching attempts."""
        next_attempt = self.clock() + timedelta(seconds=delay_seconds)
        self.update_status(
            job_id,
            "pending",
            scheduled_for=next_attempt,
            started_at=None,
        )
        logger.info(
            "Job deferred",
            job_id=job_id,
            reason=reason,
            delay_seconds=delay_seconds,
            next_attempt=next_attempt.isoformat(),
        )
        return next_attempt

    def mark_failed(self, job_id: str, error: str, attempts: Optional[int] = None) -> None:
        fields: Dict[str, Any] = {"error_message": error, "completed_at": self.clock()}
        if attempts is not None:
            fields["attempts"] = attempts
        self.update_status(job_id, "failed", **fields)
        logger.warning("Job failed permanently", job_id=job_id, error=error)

    def cancel(self, job_id: str) -> bool:
        """Cancel a job that has not started. Returns False if it was no longer pending."""
        now = self.clock()
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status == "pending")
                .values(status="cancelled", completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            cancelled = result.rowcount > 0

        if cancelled:
            logger.info("Job cancelled", job_id=job_id)
        return cancelled

    def get_history(self, organization_id: str, limit: int = 50) -> List[Job]:
        """Most recent jobs for a tenant, newest first."""
        query = (
            select(Job)
            .where(Job.organization_id == organization_id)
            .order_by(Job.created_at.desc(), Job.id.desc())
            .limit(limit)
        )
        with session_scope(self.session_factory) as db:
            return list(db.scalars(query))

    def get_oldest_pending(self, job_type: Optional[str] = None) -> Optional[Job]:
        """Oldest pending job, used for queue lag checks."""
        query = select(Job).where(Job.status == "pending")
        if job_type is not None:
            query = query.where(Job.job_type == job_type)
        query = query.order_by(Job.created_at.asc(), Job.id.asc()).limit(1)

        with session_scope(self.session_factory) as db:
            return db.scalars(query).first()

    def get_status_counts(self, job_type: Optional[str] = None) -> Dict[str, int]:
        """Get queue status counts."""
        query = select(Job.status, func.count()).group_by(Job.status)
        if job_type is not None:
            query = query.where(Job.job_type == job_type)

        status = {"pending": 0, "processing": 0, "completed": 0, "failed": 0, "cancelled": 0}
        with session_scope(self.session_factory) as db:
            for row_status, count in db.execute(query):
                status[row_status] = count
        return status

    def recover_stuck_jobs(
        self,
        stuck_threshold_minutes: int = 30,
        exclude_ids: Iterable[str] = (),
    ) -> int:
        """Reset jobs stuck in 'processing' back to 'pending'.

        Jobs get stuck when the process dies mid-job. Jobs still running in
        this process are passed in ``exclude_ids`` and left alone.
        """
        now = self.clock()
        cutoff = now - timedelta(minutes=stuck_threshold_minutes)
        excluded = list(exclude_ids)

        stmt = update(Job).where(Job.status == "processing", Job.started_at < cutoff)
        if excluded:
            stmt = stmt.where(Job.id.notin_(excluded))
        stmt = stmt.values(
            status="pending",
            started_at=None,
            scheduled_for=now,
            updated_at=now,
            error_message="Recovered from stuck state (worker likely crashed)",
        ).execution_options(synchronize_session=False)

        with session_scope(self.session_factory) as db:
            count = db.execute(stmt).rowcount

        if count > 0:
            logger.warning("Recovered stuck jobs", count=count, threshold_minutes=stuck_threshold_minutes)
        return count

    def retry_failed_job(self, job_id: str) -> bool:
        """Replay a failed job with a fresh attempt count.

        Raises:
            DuplicateJobError: If another live job took the key meanwhile
        """
        now = self.clock()
        try:
            with session_scope(self.session_factory) as db:
                result = db.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == "failed")
                    .values(
                        status="pending",
                        attempts=0,
                        error_message=None,
                        scheduled_for=now,
                        started_at=None,
                        completed_at=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                retried = result.rowcount > 0
        except IntegrityError as e:
            job = self.get(job_id)
            raise DuplicateJobError(job.organization_id, job.idempotency_key) from e

        if retried:
            logger.info("Failed job retried", job_id=job_id)
        return retried

    def clear_finished(
        self,
        older_than_hours: int = 24 * 30,
        organization_id: Optional[str] = None,
    ) -> int:
        """Delete terminal jobs that finished before the cutoff."""
        cutoff = self.clock() - timedelta(hours=older_than_hours)

        stmt = delete(Job).where(Job.status.in_(TERMINAL_STATUSES), Job.completed_at < cutoff)
        if organization_id is not None:
            stmt = stmt.where(Job.organization_id == organization_id)

        with session_scope(self.session_factory) as db:
            count = db.execute(stmt.execution_options(synchronize_session=False)).rowcount

        if count > 0:
            logger.info("Cleared finished jobs", count=count, older_than_hours=older_than_hours)
        return count
