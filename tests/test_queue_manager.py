from datetime import timedelta

import pytest

from docqueue.errors import DuplicateJobError


def test_enqueue_persists_pending_row(jobs, clock):
    job_id = jobs.enqueue(
        "analysis",
        "A",
        "analysis:doc-1",
        user_id="u1",
        subject_id="doc-1",
        payload={"document_id": "doc-1"},
    )

    job = jobs.get(job_id)
    assert job.status == "pending"
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.scheduled_for == clock()
    assert job.get_payload() == {"document_id": "doc-1"}
    assert job.backoff_key == "doc-1"


def test_duplicate_live_key_rejected_by_store(jobs):
    jobs.enqueue("analysis", "A", "same")

    with pytest.raises(DuplicateJobError):
        jobs.enqueue("analysis", "A", "same")


def test_failed_row_frees_key_in_store(jobs):
    first = jobs.enqueue("analysis", "A", "same")
    jobs.mark_failed(first, "boom")

    second = jobs.enqueue("analysis", "A", "same")

    assert second != first


def test_lease_orders_by_priority_then_age(jobs, clock):
    low = jobs.enqueue("analysis", "A", "k1", priority=8)
    clock.advance(1)
    first = jobs.enqueue("analysis", "A", "k2", priority=2)
    clock.advance(1)
    second = jobs.enqueue("analysis", "A", "k3", priority=2)

    leased = jobs.lease_next("analysis", 3)

    assert [job.id for job in leased] == [first, second, low]
    assert all(job.status == "processing" for job in leased)
    assert all(job.started_at == clock() for job in leased)


def test_lease_respects_limit_and_type(jobs):
    for i in range(5):
        jobs.enqueue("analysis", "A", f"a{i}")
    jobs.enqueue("content_extraction", "A", "c0")

    assert len(jobs.lease_next("analysis", 2)) == 2
    assert len(jobs.lease_next("analysis", 10)) == 3
    assert jobs.lease_next("analysis", 10) == []
    assert jobs.get_status_counts("content_extraction")["pending"] == 1


def test_lease_skips_future_jobs(jobs, clock):
    jobs.enqueue("analysis", "A", "later", scheduled_for=clock() + timedelta(seconds=30))

    assert jobs.lease_next("analysis", 5) == []

    clock.advance(30)
    assert len(jobs.lease_next("analysis", 5)) == 1


def test_lease_skips_excluded_subjects_and_ids(jobs):
    blocked_subject = jobs.enqueue("analysis", "A", "k1", subject_id="doc-1")
    blocked_id = jobs.enqueue("analysis", "A", "k2")
    free = jobs.enqueue("analysis", "A", "k3", subject_id="doc-2")

    leased = jobs.lease_next("analysis", 5, exclude=["doc-1", blocked_id])

    assert [job.id for job in leased] == [free]
    assert jobs.get(blocked_subject).status == "pending"
    assert jobs.get(blocked_id).status == "pending"


def test_schedule_retry_and_defer(jobs, clock):
    job_id = jobs.enqueue("analysis", "A", "k")
    jobs.lease_next("analysis", 1)

    jobs.schedule_retry(job_id, attempts=1, delay_seconds=30, error="boom")
    job = jobs.get(job_id)
    assert (job.status, job.attempts, job.error_message) == ("pending", 1, "boom")
    assert job.scheduled_for == clock() + timedelta(seconds=30)
    assert job.started_at is None

    clock.advance(30)
    jobs.lease_next("analysis", 1)
    jobs.defer(job_id, 5, reason="rate_limited")
    job = jobs.get(job_id)
    assert (job.status, job.attempts) == ("pending", 1)
    assert job.scheduled_for == clock() + timedelta(seconds=5)


def test_cancel_only_pending(jobs):
    pending = jobs.enqueue("analysis", "A", "k1")
    running = jobs.enqueue("analysis", "A", "k2", priority=1)
    jobs.lease_next("analysis", 1)

    assert jobs.cancel(pending) is True
    assert jobs.get(pending).status == "cancelled"
    assert jobs.cancel(running) is False
    assert jobs.get(running).status == "processing"


def test_history_newest_first(jobs, clock):
    older = jobs.enqueue("analysis", "A", "k1")
    clock.advance(1)
    newer = jobs.enqueue("analysis", "A", "k2")
    jobs.enqueue("analysis", "B", "k3")

    history = jobs.get_history("A", limit=10)

    assert [job.id for job in history] == [newer, older]


def test_oldest_pending(jobs, clock):
    assert jobs.get_oldest_pending() is None

    first = jobs.enqueue("analysis", "A", "k1")
    clock.advance(1)
    jobs.enqueue("content_extraction", "A", "k2")

    assert jobs.get_oldest_pending().id == first
    assert jobs.get_oldest_pending("content_extraction").id != first


def test_recover_stuck_jobs_skips_in_flight(jobs, clock):
    stuck = jobs.enqueue("analysis", "A", "k1")
    live = jobs.enqueue("analysis", "A", "k2")
    jobs.lease_next("analysis", 2)

    clock.advance(minutes=31)
    recovered = jobs.recover_stuck_jobs(30, exclude_ids=[live])

    assert recovered == 1
    assert jobs.get(stuck).status == "pending"
    assert jobs.get(live).status == "processing"


def test_retry_failed_job_resets_attempts(jobs):
    job_id = jobs.enqueue("analysis", "A", "k")
    jobs.mark_failed(job_id, "boom", attempts=4)

    assert jobs.retry_failed_job(job_id) is True

    job = jobs.get(job_id)
    assert (job.status, job.attempts, job.error_message) == ("pending", 0, None)
    assert jobs.retry_failed_job(job_id) is False


def test_retry_failed_job_conflicts_with_new_holder(jobs):
    job_id = jobs.enqueue("analysis", "A", "k")
    jobs.mark_failed(job_id, "boom")
    jobs.enqueue("analysis", "A", "k")

    with pytest.raises(DuplicateJobError):
        jobs.retry_failed_job(job_id)


def test_clear_finished(jobs, clock):
    done = jobs.enqueue("analysis", "A", "k1")
    jobs.complete(done, {"ok": True})
    other = jobs.enqueue("analysis", "B", "k2")
    jobs.complete(other)
    jobs.enqueue("analysis", "A", "k3")

    clock.advance(hours=25)

    assert jobs.clear_finished(older_than_hours=24, organization_id="A") == 1
    assert jobs.get(done) is None
    assert jobs.get(other) is not None
    assert jobs.get_status_counts()["pending"] == 1
