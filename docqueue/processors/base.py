"""Base processor class for all job processors."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Type

import structlog
from pydantic import BaseModel

from docqueue.errors import ConfigurationError, DuplicateJobError, QuotaExceededError
from docqueue.models import Job
from docqueue.payloads import EmptyPayload


@dataclass
class ProcessorResult:
    """What a processor hands back to the worker pool.

    Attributes:
        result: JSON-serializable outcome stored on the job row
        provider_calls: Provider calls actually made (0 for skipped work)
        usage: Organization usage field -> delta to apply on success
    """

    result: Any = None
    provider_calls: int = 0
    usage: Dict[str, int] = field(default_factory=dict)


class BaseProcessor(ABC):
    """Abstract base class for job processors."""

    # Override in subclasses
    job_type: str = "base"
    payload_model: Type[BaseModel] = EmptyPayload
    consumes_provider_quota: bool = False
    default_priority: int = 5
    max_attempts: Optional[int] = None  # None = engine default

    def __init__(self):
        self.scheduler = None
        self.logger = structlog.get_logger().bind(processor=self.job_type)

    def attach(self, scheduler) -> None:
        """Give the processor a handle for enqueueing follow-up jobs."""
        self.scheduler = scheduler

    def validate_payload(self, payload: Optional[dict]) -> BaseModel:
        """Parse a raw payload; raises pydantic.ValidationError when invalid."""
        return self.payload_model.model_validate(payload or {})

    def subject_id(self, payload: BaseModel) -> Optional[str]:
        """Document the job acts on, if any."""
        return getattr(payload, "document_id", None)

    @abstractmethod
    async def process(self, payload: BaseModel, job: Job) -> ProcessorResult:
        """Process a job.

        Args:
            payload: Validated payload
            job: Leased job row

        Raises:
            ProviderRateLimitedError: Provider refused the call for rate reasons
            ProcessorError: Any other failure (consumes an attempt)
        """
        pass

    def enqueue_next(
        self,
        job: Job,
        job_type: str,
        payload: dict,
        priority: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> Optional[str]:
        """Enqueue a follow-up job for the same tenant and user.

        Rejections are logged and swallowed so they never fail the parent job.

        Returns:
            New job ID, or None if the follow-up was not admitted
        """
        if self.scheduler is None:
            self.logger.warning("Processor not attached, skipping follow-up", job_type=job_type)
            return None

        try:
            return self.scheduler.enqueue_job(
                job_type,
                job.organization_id,
                job.user_id,
                payload,
                priority=priority,
                idempotency_key=idempotency_key,
            )
        except (DuplicateJobError, QuotaExceededError, ConfigurationError) as e:
            self.logger.info(
                "Follow-up job not enqueued",
                parent_job_id=job.id,
                job_type=job_type,
                reason=e.message,
            )
            return None


class FunctionProcessor(BaseProcessor):
    """Adapter that registers a plain ``async def handler(payload)`` as a processor."""

    def __init__(
        self,
        job_type: str,
        handler: Callable[[dict], Awaitable[Any]],
        consumes_provider_quota: bool = False,
        payload_model: Type[BaseModel] = EmptyPayload,
    ):
        self.job_type = job_type
        self.handler = handler
        self.consumes_provider_quota = consumes_provider_quota
        self.payload_model = payload_model
        super().__init__()

    async def process(self, payload: BaseModel, job: Job) -> ProcessorResult:
        outcome = await self.handler(payload.model_dump())
        if isinstance(outcome, ProcessorResult):
            return outcome
        return ProcessorResult(
            result=outcome,
            provider_calls=1 if self.consumes_provider_quota else 0,
        )
