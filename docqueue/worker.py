"""Worker pool that executes leased jobs of one type."""

import asyncio
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, List, Optional

import structlog
from pydantic import ValidationError

from docqueue.errors import (
    ConfigurationError,
    ProcessorError,
    ProviderRateLimitedError,
    QuotaExceededError,
)
from docqueue.models import SYSTEM_ORGANIZATION, Job
from docqueue.processors.base import BaseProcessor, ProcessorResult

if TYPE_CHECKING:
    from docqueue.scheduler import Scheduler

logger = structlog.get_logger()


class WorkerPool:
    """Runs jobs of one type with a concurrency cap.

    Leasing is synchronous, so budget checks and row claims never interleave
    with another pool's top-up. Execution happens in background tasks that
    remove themselves from ``active_jobs`` when done.
    """

    def __init__(
        self,
        scheduler: "Scheduler",
        processor: BaseProcessor,
        concurrency: int,
        interval: float,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.scheduler = scheduler
        self.processor = processor
        self.job_type = processor.job_type
        self.concurrency = concurrency
        self.interval = timedelta(seconds=interval)
        self.active_jobs: Dict[str, asyncio.Task] = {}
        self.last_top_up: Optional[datetime] = None

    @property
    def in_flight(self) -> int:
        return len(self.active_jobs)

    def is_due(self, now: datetime) -> bool:
        return self.last_top_up is None or now - self.last_top_up >= self.interval

    def top_up(self) -> int:
        """Lease jobs until the pool is at its cap or work runs out.

        Returns:
            Number of jobs started
        """
        scheduler = self.scheduler
        self.last_top_up = scheduler.clock()

        capacity = self.concurrency - self.in_flight
        if capacity <= 0:
            return 0

        exclude = scheduler.retry.backoff.active_keys()
        leased: List[Job] = []

        try:
            if self.processor.consumes_provider_quota:
                # One token per lease; a lease that finds nothing or fails returns its token
                while len(leased) < capacity:
                    if not scheduler.budget.try_consume():
                        logger.debug("Provider budget exhausted", job_type=self.job_type)
                        break
                    try:
                        batch = scheduler.jobs.lease_next(self.job_type, 1, exclude)
                    except Exception:
                        scheduler.budget.refund()
                        raise
                    if not batch:
                        scheduler.budget.refund()
                        break
                    leased.extend(batch)
            else:
                leased = scheduler.jobs.lease_next(self.job_type, capacity, exclude)
        finally:
            # Rows already moved to processing must get a task even if a later lease failed
            for job in leased:
                task = asyncio.create_task(self.process_job(job), name=f"{self.job_type}:{job.id}")
                self.active_jobs[job.id] = task

        return len(leased)

    async def process_job(self, job: Job) -> None:
        """Run one job and record its outcome.

        Never raises: processor failures become status transitions, and a
        failure while recording the outcome leaves the row for stuck-job
        recovery.
        """
        started = self.scheduler.clock()
        try:
            await self._execute(job)
        except Exception as e:
            logger.error(
                "Job bookkeeping failed",
                job_id=job.id,
                job_type=job.job_type,
                error=str(e),
                exc_info=True,
            )
        finally:
            self.active_jobs.pop(job.id, None)
            elapsed = (self.scheduler.clock() - started).total_seconds()
            self.scheduler.metrics.record_latency(elapsed)

    async def _execute(self, job: Job) -> None:
        scheduler = self.scheduler
        log = logger.bind(job_id=job.id, job_type=job.job_type, organization_id=job.organization_id)
        log.info("Processing job", attempt=job.attempts)
        scheduler.metrics.record("processed")

        try:
            processor = scheduler.processors.get(job.job_type)
            if processor is None:
                raise ConfigurationError(f"No processor registered for job type: {job.job_type}")

            try:
                payload = processor.validate_payload(job.get_payload())
            except ValidationError as e:
                raise ProcessorError(f"Invalid payload: {e}") from e

            scheduler.quota.check_plan_quota(job.organization_id, job.job_type)
            outcome = await processor.process(payload, job)

        except ConfigurationError as e:
            log.error("Job has no processor", error=e.message)
            self._fail(job, e.message, attempts=job.attempts)

        except QuotaExceededError as e:
            if self.processor.consumes_provider_quota:
                scheduler.budget.refund()
            scheduler.jobs.defer(job.id, scheduler.settings.QUOTA_DEFER_SECONDS, reason=e.dimension)
            scheduler.metrics.record("deferred")

        except ProviderRateLimitedError as e:
            scheduler.budget.record_daily_usage(e.provider_calls)
            delay = scheduler.retry.on_rate_limited(job.backoff_key, e.retry_after)
            log.warning("Provider rate limited, backing off", delay_seconds=delay)
            scheduler.jobs.defer(job.id, delay, reason="rate_limited")
            scheduler.metrics.record("rate_limited")

        except Exception as e:
            scheduler.budget.record_daily_usage(getattr(e, "provider_calls", 0))
            message = getattr(e, "message", None) or str(e) or type(e).__name__
            log.error("Job failed", error=message, exc_info=not isinstance(e, ProcessorError))

            decision = scheduler.retry.on_failure(job.attempts, job.max_attempts)
            poisoned = scheduler.retry.failures.record(job.backoff_key)
            if poisoned and not decision.terminal:
                log.warning("Subject keeps failing, giving up early", subject=job.backoff_key)
                scheduler.metrics.record("poisoned")

            if decision.terminal or poisoned:
                self._fail(job, message, attempts=decision.attempts)
            else:
                scheduler.jobs.schedule_retry(job.id, decision.attempts, decision.delay_seconds, message)
                scheduler.metrics.record("retried")

        else:
            self._complete(job, outcome)

    def _complete(self, job: Job, outcome: ProcessorResult) -> None:
        scheduler = self.scheduler
        if not isinstance(outcome, ProcessorResult):
            outcome = ProcessorResult(result=outcome)

        scheduler.jobs.complete(job.id, outcome.result)
        scheduler.retry.on_success(job.backoff_key)
        scheduler.budget.record_daily_usage(outcome.provider_calls)

        if job.organization_id != SYSTEM_ORGANIZATION:
            for field, delta in outcome.usage.items():
                if delta:
                    scheduler.organizations.increment_usage(job.organization_id, field, delta)

        scheduler.organizations.log_activity(
            job.organization_id,
            job.user_id,
            f"job_completed:{job.job_type}",
            "job",
            resource_id=job.id,
            resource_name=job.subject_id,
            details={"provider_calls": outcome.provider_calls},
        )
        scheduler.metrics.record("succeeded")

    def _fail(self, job: Job, message: str, attempts: int) -> None:
        scheduler = self.scheduler
        scheduler.jobs.mark_failed(job.id, message, attempts=attempts)
        scheduler.idempotency.release(job.organization_id, job.idempotency_key)
        scheduler.organizations.log_activity(
            job.organization_id,
            job.user_id,
            f"job_failed:{job.job_type}",
            "job",
            resource_id=job.id,
            resource_name=job.subject_id,
            details={"error": message, "attempts": attempts},
        )
        scheduler.metrics.record("failed")

    def get_status(self) -> dict:
        return {
            "job_type": self.job_type,
            "in_flight": self.in_flight,
            "concurrency": self.concurrency,
            "interval_seconds": self.interval.total_seconds(),
            "consumes_provider_quota": self.processor.consumes_provider_quota,
            "last_top_up": self.last_top_up.isoformat() if self.last_top_up else None,
        }
