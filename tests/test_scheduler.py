import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy.exc import OperationalError

from docqueue.config import EngineSettings
from docqueue.errors import (
    ConfigurationError,
    DuplicateJobError,
    InvalidPayloadError,
    NotFoundError,
    ProcessorError,
    ProviderRateLimitedError,
    QuotaExceededError,
)
from docqueue.processors import AnalysisProcessor, EmbeddingGenerationProcessor, ProcessorResult
from docqueue.scheduler import Scheduler


async def run_tick(scheduler: Scheduler) -> None:
    await scheduler.tick()
    await scheduler.wait_idle()


def make_scheduler(session_factory, clock, **overrides) -> Scheduler:
    return Scheduler(session_factory, EngineSettings(DATABASE_URL="sqlite://", **overrides), clock)


@pytest.mark.asyncio
async def test_one_tick_leases_no_more_than_token_budget(session_factory, clock, org):
    scheduler = make_scheduler(
        session_factory,
        clock,
        PROVIDER_REQUESTS_PER_MINUTE=15,
        POOL_CONCURRENCY={"analysis": 50},
    )
    release = asyncio.Event()

    async def handler(payload):
        await release.wait()
        return {"document_id": payload["document_id"]}

    scheduler.register_processor("analysis", handler, consumes_provider_quota=True)
    for i in range(20):
        scheduler.enqueue_job("analysis", "A", "u1", {"document_id": f"doc-{i}"})

    await scheduler.tick()

    counts = scheduler.jobs.get_status_counts("analysis")
    assert counts["processing"] == 15
    assert counts["pending"] == 5
    assert scheduler.budget.tokens == 0
    assert scheduler.get_status()["in_flight_by_pool"] == {"analysis": 15}

    release.set()
    await scheduler.wait_idle()
    assert scheduler.jobs.get_status_counts("analysis")["completed"] == 15

    # Tokens come back with time, not with the next tick
    clock.advance(2)
    await run_tick(scheduler)
    assert scheduler.jobs.get_status_counts("analysis")["pending"] == 5

    clock.advance(58)
    await run_tick(scheduler)
    counts = scheduler.jobs.get_status_counts("analysis")
    assert counts["completed"] == 20
    assert counts["pending"] == 0
    assert scheduler.budget.daily_count == 20


@pytest.mark.asyncio
async def test_one_tick_bounded_by_pool_cap(scheduler):
    release = asyncio.Event()

    async def handler(payload):
        await release.wait()

    scheduler.register_processor("analysis", handler, consumes_provider_quota=True)
    for i in range(20):
        scheduler.enqueue_job("analysis", "A", "u1", {"document_id": f"doc-{i}"})

    await scheduler.tick()

    assert scheduler.jobs.get_status_counts("analysis")["processing"] == 3
    assert scheduler.budget.tokens == 12

    release.set()
    await scheduler.wait_idle()


@pytest.mark.asyncio
async def test_pool_never_exceeds_cap(scheduler, clock):
    release = asyncio.Event()
    peak = 0

    async def handler(payload):
        nonlocal peak
        peak = max(peak, scheduler.pools["content_extraction"].in_flight)
        await release.wait()

    scheduler.register_processor("content_extraction", handler)
    for i in range(10):
        scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": f"doc-{i}"})

    await scheduler.tick()
    clock.advance(2)
    await scheduler.tick()
    clock.advance(2)
    await scheduler.tick()

    assert scheduler.pools["content_extraction"].in_flight == 2
    assert scheduler.jobs.get_status_counts("content_extraction")["processing"] == 2

    release.set()
    await scheduler.wait_idle()
    clock.advance(2)
    await scheduler.tick()

    assert scheduler.pools["content_extraction"].in_flight == 2
    await scheduler.wait_idle()
    assert peak <= 2
    assert scheduler.jobs.get_status_counts("content_extraction")["completed"] == 4


@pytest.mark.asyncio
async def test_rate_limit_backoff_doubles_without_attempts(scheduler, clock):
    handler = AsyncMock(side_effect=ProviderRateLimitedError())
    scheduler.register_processor("analysis", handler, consumes_provider_quota=True)
    job_id = scheduler.enqueue_job("analysis", "A", "u1", {"document_id": "doc-1"})

    delays = []
    for _ in range(3):
        await run_tick(scheduler)
        job = scheduler.jobs.get(job_id)
        assert job.status == "pending"
        assert job.attempts == 0
        delay = (job.scheduled_for - clock()).total_seconds()
        delays.append(delay)
        clock.advance(delay)

    assert delays == [5, 10, 20]
    assert handler.await_count == 3
    assert scheduler.retry.backoff.get_delay("doc-1") == 20
    assert scheduler.budget.daily_count == 0
    assert scheduler.metrics.totals["rate_limited"] == 3


@pytest.mark.asyncio
async def test_backoff_holds_other_jobs_for_same_subject(scheduler, clock):
    handler = AsyncMock(side_effect=[ProviderRateLimitedError(), {"ok": True}, {"ok": True}])
    scheduler.register_processor("analysis", handler, consumes_provider_quota=True)
    first = scheduler.enqueue_job("analysis", "A", "u1", {"document_id": "doc-1"}, priority=1)

    await run_tick(scheduler)
    second = scheduler.enqueue_job("analysis", "A", "u1", {"document_id": "doc-1"})

    clock.advance(2)
    await run_tick(scheduler)
    assert scheduler.jobs.get(second).status == "pending"

    clock.advance(3)
    await run_tick(scheduler)
    assert scheduler.jobs.get(first).status == "completed"
    assert scheduler.jobs.get(second).status == "completed"
    assert scheduler.retry.backoff.get_delay("doc-1") is None


@pytest.mark.asyncio
async def test_ordinary_failures_retry_then_fail(scheduler, clock):
    handler = AsyncMock(side_effect=ProcessorError("boom"))
    scheduler.register_processor("content_extraction", handler)
    job_id = scheduler.enqueue_job(
        "content_extraction",
        "A",
        "u1",
        {"document_id": "doc-1"},
        idempotency_key="extract:doc-1",
        max_attempts=2,
    )

    await run_tick(scheduler)
    job = scheduler.jobs.get(job_id)
    assert (job.status, job.attempts, job.error_message) == ("pending", 1, "boom")
    assert job.scheduled_for == clock() + timedelta(seconds=30)

    clock.advance(30)
    await run_tick(scheduler)
    job = scheduler.jobs.get(job_id)
    assert (job.status, job.attempts) == ("pending", 2)
    assert job.scheduled_for == clock() + timedelta(seconds=120)

    clock.advance(120)
    await run_tick(scheduler)
    job = scheduler.jobs.get(job_id)
    assert (job.status, job.attempts, job.error_message) == ("failed", 3, "boom")

    # Terminal: no further attempts
    clock.advance(600)
    await run_tick(scheduler)
    assert handler.await_count == 3

    actions = [entry.action for entry in scheduler.organizations.get_activity("A")]
    assert actions == ["job_failed:content_extraction"]

    # A failed job frees its key
    new_id = scheduler.enqueue_job(
        "content_extraction", "A", "u1", {"document_id": "doc-1"}, idempotency_key="extract:doc-1"
    )
    assert new_id != job_id


@pytest.mark.asyncio
async def test_unexpected_exceptions_consume_attempts(scheduler):
    handler = AsyncMock(side_effect=RuntimeError("kaboom"))
    scheduler.register_processor("content_extraction", handler)
    job_id = scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "doc-1"})

    await run_tick(scheduler)

    job = scheduler.jobs.get(job_id)
    assert (job.status, job.attempts, job.error_message) == ("pending", 1, "kaboom")


@pytest.mark.asyncio
async def test_subject_failing_repeatedly_fails_early(session_factory, clock, org):
    scheduler = make_scheduler(session_factory, clock, POOL_CONCURRENCY={"content_extraction": 5})
    handler = AsyncMock(side_effect=ProcessorError("corrupt file"))
    scheduler.register_processor("content_extraction", handler)
    for _ in range(3):
        scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "doc-1"}, max_attempts=5)

    await run_tick(scheduler)

    counts = scheduler.jobs.get_status_counts("content_extraction")
    assert (counts["pending"], counts["failed"]) == (2, 1)
    assert scheduler.metrics.totals["poisoned"] == 1

    clock.advance(30)
    await run_tick(scheduler)

    counts = scheduler.jobs.get_status_counts("content_extraction")
    assert (counts["pending"], counts["failed"]) == (0, 3)


@pytest.mark.asyncio
async def test_success_resets_subject_failures(session_factory, clock, org):
    scheduler = make_scheduler(session_factory, clock, RETRY_DELAYS=[2])
    error = ProcessorError("flaky")
    handler = AsyncMock(side_effect=[error, error, None, error, error])
    scheduler.register_processor("content_extraction", handler)
    first_id = scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "doc-1"}, max_attempts=5)

    await run_tick(scheduler)
    for _ in range(2):
        clock.advance(2)
        await run_tick(scheduler)
    assert scheduler.jobs.get(first_id).status == "completed"
    assert len(scheduler.retry.failures) == 0

    second_id = scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "doc-1"}, max_attempts=5)
    for _ in range(2):
        clock.advance(2)
        await run_tick(scheduler)

    job = scheduler.jobs.get(second_id)
    assert (job.status, job.attempts) == ("pending", 2)
    assert scheduler.metrics.totals["poisoned"] == 0


@pytest.mark.asyncio
async def test_embedding_noop_records_zero_usage(scheduler, documents):
    document = documents.create_document("A", "report.pdf", content="Quarterly numbers")
    documents.update_document(document.id, embeddings_generated=True)
    embeddings = Mock()
    embeddings.embed = AsyncMock()
    scheduler.register_processor(
        "embedding_generation", EmbeddingGenerationProcessor(documents, embeddings)
    )
    job_id = scheduler.enqueue_job("embedding_generation", "A", "u1", {"document_id": document.id})

    await run_tick(scheduler)

    job = scheduler.jobs.get(job_id)
    assert job.status == "completed"
    assert job.get_result()["skipped"] is True
    assert scheduler.budget.daily_count == 0
    embeddings.embed.assert_not_awaited()


@pytest.mark.asyncio
async def test_success_bookkeeping(scheduler, clock):
    async def handler(payload):
        return ProcessorResult(
            result={"summary": "ok"},
            provider_calls=1,
            usage={"ai_analyses_this_month": 1},
        )

    scheduler.register_processor("analysis", handler, consumes_provider_quota=True)
    scheduler.retry.on_rate_limited("doc-1")
    clock.advance(5)
    job_id = scheduler.enqueue_job("analysis", "A", "u1", {"document_id": "doc-1"})

    await run_tick(scheduler)

    job = scheduler.jobs.get(job_id)
    assert job.status == "completed"
    assert job.get_result() == {"summary": "ok"}
    assert job.completed_at == clock()
    assert scheduler.organizations.get_organization("A").ai_analyses_this_month == 1
    assert scheduler.budget.daily_count == 1
    assert scheduler.retry.backoff.get_delay("doc-1") is None

    entries = scheduler.organizations.get_activity("A")
    assert [entry.action for entry in entries] == ["job_completed:analysis"]
    assert entries[0].resource_id == job_id


@pytest.mark.asyncio
async def test_plan_quota_failure_defers_job(scheduler, clock):
    handler = AsyncMock(return_value={"ok": True})
    scheduler.register_processor("analysis", handler, consumes_provider_quota=True)
    job_id = scheduler.enqueue_job("analysis", "A", "u1", {"document_id": "doc-1"})
    scheduler.organizations.increment_usage("A", "ai_analyses_this_month", 100)

    await run_tick(scheduler)

    job = scheduler.jobs.get(job_id)
    assert (job.status, job.attempts) == ("pending", 0)
    assert job.scheduled_for == clock() + timedelta(seconds=300)
    assert scheduler.budget.tokens == 15
    handler.assert_not_awaited()


def test_enqueue_plan_quota_rejected(scheduler):
    scheduler.register_processor("analysis", AsyncMock(), consumes_provider_quota=True)
    scheduler.organizations.increment_usage("A", "ai_analyses_this_month", 100)

    with pytest.raises(QuotaExceededError):
        scheduler.enqueue_job("analysis", "A", "u1", {"document_id": "doc-1"})

    assert scheduler.quota.get_usage("A") is None


def test_duplicate_enqueue_rejected(scheduler):
    scheduler.register_processor("content_extraction", AsyncMock())
    scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d"}, idempotency_key="k")

    with pytest.raises(DuplicateJobError):
        scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d"}, idempotency_key="k")

    scheduler.enqueue_job("content_extraction", "B", "u2", {"document_id": "d"}, idempotency_key="k")


def test_store_duplicate_returns_admission(session_factory, clock, org):
    scheduler = make_scheduler(session_factory, clock, MAX_JOBS_PER_ORG_PER_HOUR=1)
    scheduler.register_processor("content_extraction", AsyncMock())
    store_enqueue = scheduler.jobs.enqueue
    scheduler.jobs.enqueue = Mock(side_effect=DuplicateJobError("A", "k"))

    with pytest.raises(DuplicateJobError):
        scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d"}, idempotency_key="k")
    assert scheduler.quota.get_usage("A")["hour_count"] == 0

    scheduler.jobs.enqueue = store_enqueue
    scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d"}, idempotency_key="k2")


@pytest.mark.asyncio
async def test_completed_job_keeps_blocking_key(scheduler):
    scheduler.register_processor("content_extraction", AsyncMock(return_value=None))
    scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d"}, idempotency_key="k")
    await run_tick(scheduler)

    scheduler.idempotency.expire_if_due()
    scheduler.idempotency.release("A", "k")
    with pytest.raises(DuplicateJobError):
        scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d"}, idempotency_key="k")


def test_admission_limit_per_hour(session_factory, clock, org):
    scheduler = make_scheduler(session_factory, clock, MAX_JOBS_PER_ORG_PER_HOUR=3)
    scheduler.register_processor("content_extraction", AsyncMock())

    for i in range(3):
        scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": f"d{i}"})
    with pytest.raises(QuotaExceededError):
        scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d3"})

    clock.advance(hours=1)
    scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d3"})


def test_enqueue_unregistered_type(scheduler):
    with pytest.raises(ConfigurationError):
        scheduler.enqueue_job("transcode", "A", "u1", {})


def test_enqueue_validates_payload(scheduler, documents):
    scheduler.register_processor("analysis", AnalysisProcessor(documents, Mock()))

    with pytest.raises(InvalidPayloadError):
        scheduler.enqueue_job("analysis", "A", "u1", {})

    job_id = scheduler.enqueue_job("analysis", "A", "u1", {"documentId": "doc-9", "force": True})
    job = scheduler.jobs.get(job_id)
    assert job.get_payload() == {"document_id": "doc-9", "force": True}
    assert job.subject_id == "doc-9"
    assert job.priority == AnalysisProcessor.default_priority


@pytest.mark.asyncio
async def test_job_without_processor_fails_immediately(scheduler):
    handler = AsyncMock()
    scheduler.register_processor("content_extraction", handler)
    job_id = scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d"})
    del scheduler.processors["content_extraction"]

    await run_tick(scheduler)

    job = scheduler.jobs.get(job_id)
    assert (job.status, job.attempts) == ("failed", 0)
    assert "No processor registered" in job.error_message
    handler.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_job(scheduler):
    release = asyncio.Event()

    async def handler(payload):
        await release.wait()

    scheduler.register_processor("content_extraction", handler)
    running = scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d1"}, priority=1)
    waiting = scheduler.enqueue_job(
        "content_extraction", "A", "u1", {"document_id": "d2"}, idempotency_key="k2"
    )
    third = scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d3"}, priority=9)

    scheduler.pools["content_extraction"].concurrency = 1
    await scheduler.tick()

    assert scheduler.cancel_job(waiting) is True
    assert scheduler.cancel_job(running) is False
    assert scheduler.jobs.get(running).status == "processing"
    with pytest.raises(NotFoundError):
        scheduler.cancel_job("missing")

    scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d2"}, idempotency_key="k2")

    release.set()
    await scheduler.wait_idle()
    assert scheduler.jobs.get(third).status == "pending"


def test_retry_job_replays_failed(scheduler):
    scheduler.register_processor("content_extraction", AsyncMock())
    job_id = scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d"})
    scheduler.jobs.mark_failed(job_id, "bad", attempts=4)

    assert scheduler.retry_job(job_id) is True
    job = scheduler.jobs.get(job_id)
    assert (job.status, job.attempts) == ("pending", 0)
    assert scheduler.retry_job(job_id) is False


@pytest.mark.asyncio
async def test_tick_survives_store_errors(scheduler):
    scheduler.register_processor("content_extraction", AsyncMock())
    scheduler.jobs.lease_next = Mock(side_effect=RuntimeError("database unavailable"))

    await scheduler.tick()

    assert scheduler.last_tick is None
    assert scheduler._ticking is False


@pytest.mark.asyncio
async def test_failed_lease_keeps_already_leased_jobs_running(session_factory, clock, org):
    scheduler = make_scheduler(session_factory, clock, POOL_CONCURRENCY={"analysis": 5})
    scheduler.register_processor("analysis", AsyncMock(return_value={"ok": True}), consumes_provider_quota=True)
    for i in range(3):
        scheduler.enqueue_job("analysis", "A", "u1", {"document_id": f"doc-{i}"})

    store_lease = scheduler.jobs.lease_next
    calls = []

    def lease_next(*args, **kwargs):
        calls.append(args)
        if len(calls) == 2:
            raise OperationalError("SELECT", {}, Exception("database is locked"))
        return store_lease(*args, **kwargs)

    scheduler.jobs.lease_next = lease_next

    await scheduler.tick()
    await scheduler.wait_idle()

    counts = scheduler.jobs.get_status_counts("analysis")
    assert (counts["completed"], counts["processing"], counts["pending"]) == (1, 0, 2)
    assert scheduler.pools["analysis"].in_flight == 0
    assert scheduler.budget.tokens == 14
    assert scheduler.last_tick is None

    clock.advance(2)
    await run_tick(scheduler)
    assert scheduler.jobs.get_status_counts("analysis")["completed"] == 3


@pytest.mark.asyncio
async def test_pause_stops_leasing(scheduler, clock):
    handler = AsyncMock(return_value=None)
    scheduler.register_processor("content_extraction", handler)
    job_id = scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d"})

    scheduler.pause()
    await run_tick(scheduler)
    assert scheduler.jobs.get(job_id).status == "pending"

    scheduler.resume()
    clock.advance(2)
    await run_tick(scheduler)
    assert scheduler.jobs.get(job_id).status == "completed"


def test_maintenance_recovers_orphaned_rows(scheduler, clock):
    scheduler.register_processor("content_extraction", AsyncMock())
    job_id = scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d"})
    scheduler.jobs.lease_next("content_extraction", 1)

    clock.advance(minutes=31)
    scheduler.run_maintenance()

    assert scheduler.jobs.get(job_id).status == "pending"


def test_queue_lag_and_history(scheduler, clock):
    scheduler.register_processor("content_extraction", AsyncMock())
    assert scheduler.get_queue_lag() == 0.0

    first = scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d1"})
    clock.advance(100)
    second = scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d2"})

    assert scheduler.get_queue_lag() == 100.0
    assert [job.id for job in scheduler.get_job_history("A", limit=5)] == [second, first]


def test_status_shape(scheduler):
    scheduler.register_processor("analysis", AsyncMock(), consumes_provider_quota=True)

    status = scheduler.get_status()

    assert status["is_running"] is False
    assert status["tokens_available"] == 15
    assert status["in_flight_by_pool"] == {"analysis": 0}
    assert status["pools"]["analysis"]["consumes_provider_quota"] is True


@pytest.mark.asyncio
async def test_start_and_stop(scheduler):
    scheduler.register_processor("content_extraction", AsyncMock(return_value=None))
    job_id = scheduler.enqueue_job("content_extraction", "A", "u1", {"document_id": "d"})

    scheduler.start()
    for _ in range(20):
        await asyncio.sleep(0)
        if scheduler.jobs.get(job_id).status == "completed":
            break
    await scheduler.stop(timeout=1)

    assert scheduler.running is False
    assert scheduler.jobs.get(job_id).status == "completed"
