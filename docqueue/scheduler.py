"""Scheduler loop: owns the shared engine state and drives the worker pools."""

import asyncio
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog
from pydantic import ValidationError

from docqueue.config import EngineSettings, settings as default_settings
from docqueue.database import SessionFactory, SessionLocal
from docqueue.errors import (
    ConfigurationError,
    DuplicateJobError,
    InvalidPayloadError,
    NotFoundError,
)
from docqueue.idempotency import IdempotencyRegistry
from docqueue.metrics import QueueMetrics
from docqueue.models import Job
from docqueue.organizations import OrganizationStore
from docqueue.processors.base import BaseProcessor, FunctionProcessor
from docqueue.queue_manager import JobStore
from docqueue.quota import TenantQuotaGuard
from docqueue.rate_budget import RateBudget
from docqueue.retry import RetryPolicy
from docqueue.utils.clock import Clock, utcnow
from docqueue.worker import WorkerPool

logger = structlog.get_logger()

Handler = Union[BaseProcessor, Callable[[dict], Awaitable[Any]]]


class Scheduler:
    """
    Single in-process job engine.

    Owns the rate budget, tenant quota guard, idempotency registry, retry
    policy and one worker pool per registered job type. Each tick refills the
    budget, runs maintenance when due, then tops up every due pool.
    """

    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        engine_settings: Optional[EngineSettings] = None,
        clock: Clock = utcnow,
    ):
        self.settings = engine_settings or default_settings
        self.clock = clock
        s = self.settings

        self.jobs = JobStore(session_factory, clock)
        self.organizations = OrganizationStore(session_factory, clock)
        self.budget = RateBudget(s.PROVIDER_REQUESTS_PER_MINUTE, s.PROVIDER_DAILY_LIMIT, clock)
        self.quota = TenantQuotaGuard(
            self.organizations,
            max_per_org_per_hour=s.MAX_JOBS_PER_ORG_PER_HOUR,
            max_per_org_per_day=s.MAX_JOBS_PER_ORG_PER_DAY,
            stale_after=timedelta(hours=s.TENANT_STALE_HOURS),
            clock=clock,
        )
        self.idempotency = IdempotencyRegistry(self.jobs, s.IDEMPOTENCY_CLEAR_INTERVAL, clock)
        self.retry = RetryPolicy(
            s.RETRY_DELAYS,
            initial_backoff=s.RATE_LIMIT_INITIAL_BACKOFF,
            max_backoff=s.RATE_LIMIT_MAX_BACKOFF,
            poison_threshold=s.POISON_PILL_THRESHOLD,
            poison_window_seconds=s.POISON_PILL_WINDOW_SECONDS,
            clock=clock,
        )
        self.metrics = QueueMetrics(clock=clock)

        self.processors: Dict[str, BaseProcessor] = {}
        self.pools: Dict[str, WorkerPool] = {}

        self.tick_interval = s.SCHEDULER_TICK_INTERVAL
        self.maintenance_interval = timedelta(seconds=s.MAINTENANCE_INTERVAL)
        self.running = False
        self.paused = False
        self.last_tick: Optional[datetime] = None
        self._last_maintenance: Optional[datetime] = None
        self._ticking = False
        self._task: Optional[asyncio.Task] = None

    # Registration

    def register_processor(
        self,
        job_type: str,
        handler: Handler,
        consumes_provider_quota: bool = False,
    ) -> BaseProcessor:
        """Register a processor instance or a plain async handler for a job type.

        ``consumes_provider_quota`` only applies to plain handlers; processor
        classes declare it themselves.
        """
        if isinstance(handler, BaseProcessor):
            processor = handler
            if processor.job_type != job_type:
                raise ConfigurationError(
                    f"Processor handles '{processor.job_type}', not '{job_type}'"
                )
        elif callable(handler):
            processor = FunctionProcessor(job_type, handler, consumes_provider_quota)
        else:
            raise ConfigurationError(f"Handler for {job_type} is not callable")

        processor.attach(self)
        self.processors[job_type] = processor

        existing = self.pools.get(job_type)
        pool = WorkerPool(
            self,
            processor,
            concurrency=self.settings.POOL_CONCURRENCY.get(job_type, self.settings.DEFAULT_POOL_CONCURRENCY),
            interval=self.settings.POOL_INTERVALS.get(job_type, self.settings.DEFAULT_POOL_INTERVAL),
        )
        if existing is not None:
            # Keep tracking jobs started by the replaced processor
            pool.active_jobs = existing.active_jobs
        self.pools[job_type] = pool

        logger.info(
            "Processor registered",
            job_type=job_type,
            concurrency=pool.concurrency,
            consumes_provider_quota=processor.consumes_provider_quota,
        )
        return processor

    # Admission

    def enqueue_job(
        self,
        job_type: str,
        organization_id: str,
        user_id: Optional[str] = None,
        payload: Optional[dict] = None,
        *,
        priority: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> str:
        """Validate and persist a new job.

        Raises:
            ConfigurationError: No processor for job_type
            InvalidPayloadError: Payload does not fit the job type
            DuplicateJobError: Idempotency key already held by a live job
            QuotaExceededError: Tenant admission rate or plan limit reached
            NotFoundError: Organization missing for a plan-limited job type
        """
        processor = self.processors.get(job_type)
        if processor is None:
            raise ConfigurationError(f"No processor registered for job type: {job_type}")

        try:
            model = processor.validate_payload(payload)
        except ValidationError as e:
            raise InvalidPayloadError(
                f"Invalid payload for {job_type}",
                details={"errors": e.errors(include_url=False)},
            ) from e

        key = idempotency_key or f"{job_type}-{uuid.uuid4().hex}"

        # Admission is counted last so earlier rejections leave the window untouched
        self.idempotency.reserve(organization_id, key)
        self.quota.check_plan_quota(organization_id, job_type)
        self.quota.check_admission(organization_id)

        try:
            job_id = self.jobs.enqueue(
                job_type=job_type,
                organization_id=organization_id,
                idempotency_key=key,
                user_id=user_id,
                subject_id=processor.subject_id(model),
                payload=model.model_dump(mode="json"),
                priority=processor.default_priority if priority is None else priority,
                max_attempts=max_attempts or processor.max_attempts or self.settings.QUEUE_MAX_ATTEMPTS,
                scheduled_for=scheduled_for,
            )
        except DuplicateJobError:
            self.quota.release_admission(organization_id)
            raise

        self.idempotency.remember(organization_id, key)
        self.metrics.record("enqueued")
        return job_id

    # Loop

    async def tick(self) -> None:
        """One scheduler pass. Errors are logged and the pass is skipped."""
        if self._ticking:
            logger.debug("Previous tick still running, skipping")
            return

        self._ticking = True
        try:
            now = self.clock()
            self.budget.refill()

            if self._last_maintenance is None or now - self._last_maintenance >= self.maintenance_interval:
                self.run_maintenance()

            if not self.paused:
                for pool in list(self.pools.values()):
                    if pool.is_due(now):
                        started = pool.top_up()
                        if started:
                            logger.debug("Pool topped up", job_type=pool.job_type, started=started)

            self.last_tick = now
        except Exception as e:
            logger.error("Scheduler tick failed", error=str(e), exc_info=True)
        finally:
            self._ticking = False

    async def run(self) -> None:
        """Main scheduler loop."""
        self.running = True
        logger.info(
            "Scheduler started",
            interval=self.tick_interval,
            job_types=list(self.pools),
        )

        while self.running:
            await self.tick()
            await asyncio.sleep(self.tick_interval)

        logger.info("Scheduler stopped")

    def start(self) -> asyncio.Task:
        """Start the loop as a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="scheduler")
        return self._task

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop leasing and wait for in-flight jobs, up to ``timeout`` seconds."""
        self.running = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        timeout = self.settings.SHUTDOWN_TIMEOUT if timeout is None else timeout
        tasks = self._in_flight_tasks()
        if tasks:
            logger.info("Waiting for active jobs to complete", count=len(tasks))
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                # Left as processing; recovered as stuck jobs on next start
                logger.warning("Jobs still running at shutdown", count=len(pending))

        logger.info("Scheduler shutdown complete")

    def pause(self) -> None:
        """Stop leasing new jobs; in-flight jobs keep running."""
        self.paused = True
        logger.info("Scheduler paused")

    def resume(self) -> None:
        self.paused = False
        logger.info("Scheduler resumed")

    async def wait_idle(self) -> None:
        """Wait until every in-flight job has finished."""
        while True:
            tasks = self._in_flight_tasks()
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def run_maintenance(self) -> None:
        """Periodic housekeeping of in-memory state and orphaned rows."""
        self._last_maintenance = self.clock()
        try:
            swept = self.quota.sweep_stale()
            cleared = self.idempotency.expire_if_due()
            pruned = self.retry.backoff.prune()
            pruned += self.retry.failures.prune()
            stuck = self.jobs.recover_stuck_jobs(
                self.settings.STUCK_JOB_THRESHOLD_MINUTES,
                exclude_ids=self.in_flight_ids(),
            )
        except Exception as e:
            logger.error("Maintenance task failed", error=str(e), exc_info=True)
            return

        if swept or pruned or stuck:
            logger.info(
                "Maintenance completed",
                stale_tenants=swept,
                idempotency_cleared=cleared,
                backoff_pruned=pruned,
                stuck_jobs=stuck,
            )

    # Operations

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending job. Returns False if it already started or finished."""
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)

        if not self.jobs.cancel(job_id):
            logger.info("Cancel rejected", job_id=job_id, status=job.status)
            return False

        self.idempotency.release(job.organization_id, job.idempotency_key)
        return True

    def retry_job(self, job_id: str) -> bool:
        """Re-queue a failed job with fresh attempts."""
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)

        if not self.jobs.retry_failed_job(job_id):
            logger.info("Retry rejected", job_id=job_id, status=job.status)
            return False

        self.idempotency.remember(job.organization_id, job.idempotency_key)
        return True

    def get_job_history(self, organization_id: str, limit: int = 50) -> List[Job]:
        return self.jobs.get_history(organization_id, limit)

    def get_queue_lag(self, job_type: Optional[str] = None) -> float:
        """Seconds the oldest pending job has been waiting (0 when idle)."""
        oldest = self.jobs.get_oldest_pending(job_type)
        if oldest is None:
            return 0.0
        return max(0.0, (self.clock() - oldest.created_at).total_seconds())

    def in_flight_ids(self) -> List[str]:
        return [job_id for pool in self.pools.values() for job_id in pool.active_jobs]

    def _in_flight_tasks(self) -> List[asyncio.Task]:
        return [task for pool in self.pools.values() for task in pool.active_jobs.values()]

    def get_status(self) -> dict:
        """Get scheduler status."""
        return {
            "is_running": self.running,
            "paused": self.paused,
            "tokens_available": self.budget.tokens,
            "in_flight_by_pool": {job_type: pool.in_flight for job_type, pool in self.pools.items()},
            "budget": self.budget.get_status(),
            "pools": {job_type: pool.get_status() for job_type, pool in self.pools.items()},
            "tracked_tenants": self.quota.tracked_tenants,
            "backoff_entries": len(self.retry.backoff),
            "metrics": self.metrics.snapshot(),
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
        }
