"""Exception taxonomy for the job engine.

Enqueue-time errors (DuplicateJobError, QuotaExceededError, ConfigurationError,
InvalidPayloadError) are raised directly to the caller. Processing-time errors
are caught by the worker pool and turned into job status transitions.
"""

from typing import Optional


class JobEngineError(Exception):
    """Base exception for job engine errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DuplicateJobError(JobEngineError):
    """An active or completed job already holds the idempotency key."""

    def __init__(self, organization_id: str, idempotency_key: str, job_id: Optional[str] = None):
        super().__init__(
            f"Job with idempotency key '{idempotency_key}' already exists",
            details={
                "organization_id": organization_id,
                "idempotency_key": idempotency_key,
                "job_id": job_id,
            },
        )
        self.organization_id = organization_id
        self.idempotency_key = idempotency_key
        self.job_id = job_id


class QuotaExceededError(JobEngineError):
    """Tenant admission rate or plan quota exhausted."""

    def __init__(self, organization_id: str, dimension: str, usage: float, limit: float):
        super().__init__(
            f"Quota exceeded for {dimension}: {usage}/{limit}",
            details={
                "organization_id": organization_id,
                "dimension": dimension,
                "usage": usage,
                "limit": limit,
            },
        )
        self.organization_id = organization_id
        self.dimension = dimension
        self.usage = usage
        self.limit = limit


class ConfigurationError(JobEngineError):
    """No processor is registered for a job type."""

    pass


class InvalidPayloadError(JobEngineError):
    """Payload does not match the registered processor's schema."""

    pass


class ProcessorError(JobEngineError):
    """Processor failure that consumes a retry attempt.

    ``provider_calls`` counts provider calls already made before the failure
    so the daily budget reflects quota that was actually spent.
    """

    def __init__(self, message: str, details: Optional[dict] = None, provider_calls: int = 0):
        super().__init__(message, details)
        self.provider_calls = provider_calls


class NotFoundError(ProcessorError):
    """Referenced document, organization or job does not exist."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            f"{resource} not found: {identifier}",
            details={"resource": resource, "id": identifier},
        )
        self.resource = resource
        self.identifier = identifier


class ProviderRateLimitedError(JobEngineError):
    """The AI provider rejected a call for rate reasons (HTTP 429 class).

    Deferral, not failure: does not consume an attempt.
    """

    def __init__(
        self,
        message: str = "AI provider rate limit reached",
        retry_after: Optional[float] = None,
        provider_calls: int = 0,
    ):
        super().__init__(message, details={"retry_after": retry_after})
        self.retry_after = retry_after
        self.provider_calls = provider_calls
