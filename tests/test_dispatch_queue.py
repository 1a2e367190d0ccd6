from datetime import datetime
from datetime import timedelta

import pytest

from orgpilot.crud import crud
from orgpilot.models.enums import QueueEntryStatus
from orgpilot.services.dispatch_queue import DispatchQueue
from orgpilot.services.dispatch_queue import QueueOptions


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 9, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(session_factory, clock):
    return DispatchQueue(session_factory, options=QueueOptions(attempts=3, backoff_s=5), clock=clock)


def test_backoff_delay_doubles():
    assert [DispatchQueue.backoff_delay(5, n) for n in (1, 2, 3)] == [5, 10, 20]


def test_enqueue_is_keyed_by_job(queue, make_job):
    job = make_job()

    first = queue.enqueue(job.id, {"org_id": 1})
    second = queue.enqueue(job.id, {"org_id": 1})

    assert first is not None
    assert second is None
    assert queue.pending_count() == 1


def test_job_can_be_enqueued_again_after_completion(queue, make_job):
    job = make_job()
    queue.enqueue(job.id)
    [entry] = queue.claim()
    queue.complete(entry.id)

    assert queue.enqueue(job.id, {"response": "yes"}) is not None


def test_claim_marks_active_and_counts_attempt(queue, make_job, db_session):
    job = make_job()
    queue.enqueue(job.id, {"org_id": 7})

    [entry] = queue.claim(5)

    assert entry.job_id == job.id
    assert entry.payload == {"org_id": 7}
    assert entry.attempt == 1
    assert not entry.is_last_attempt
    assert queue.claim(5) == []
    [row] = crud.get_queue_entries_for_job(db_session, job.id)
    assert row.status == QueueEntryStatus.ACTIVE


def test_claim_respects_limit_and_order(queue, make_job):
    jobs = [make_job() for _ in range(3)]
    for job in jobs:
        queue.enqueue(job.id)

    claimed = queue.claim(2)

    assert [e.job_id for e in claimed] == [jobs[0].id, jobs[1].id]


def test_failed_entry_retries_with_backoff(queue, make_job, clock):
    job = make_job()
    queue.enqueue(job.id)
    [entry] = queue.claim()

    assert queue.fail(entry.id, "boom") is True
    assert queue.claim() == []

    clock.advance(4.9)
    assert queue.claim() == []

    clock.advance(0.1)
    [retry] = queue.claim()
    assert retry.attempt == 2


def test_second_retry_waits_twice_as_long(queue, make_job, clock):
    job = make_job()
    queue.enqueue(job.id)
    queue.fail(queue.claim()[0].id, "boom")
    clock.advance(5)
    queue.fail(queue.claim()[0].id, "boom")

    clock.advance(9)
    assert queue.claim() == []
    clock.advance(1)
    [entry] = queue.claim()
    assert entry.attempt == 3
    assert entry.is_last_attempt


def test_entry_fails_permanently_after_max_attempts(queue, make_job, clock, db_session):
    job = make_job()
    queue.enqueue(job.id)

    outcomes = []
    for _ in range(3):
        [entry] = queue.claim()
        outcomes.append(queue.fail(entry.id, "still broken"))
        clock.advance(60)

    assert outcomes == [True, True, False]
    assert queue.claim() == []
    [row] = crud.get_queue_entries_for_job(db_session, job.id)
    db_session.refresh(row)
    assert row.status == QueueEntryStatus.FAILED
    assert row.last_error == "still broken"
    assert queue.pending_count() == 0


def test_prune_keeps_bounded_history(session_factory, make_job, clock, db_session):
    queue = DispatchQueue(session_factory, options=QueueOptions(keep_completed=2, keep_failed=1), clock=clock)
    jobs = [make_job() for _ in range(4)]
    for job in jobs:
        queue.enqueue(job.id)
    for entry in queue.claim(4):
        queue.complete(entry.id)

    remaining = [e for job in jobs for e in crud.get_queue_entries_for_job(db_session, job.id)]

    assert [e.job_id for e in remaining] == [jobs[2].id, jobs[3].id]


def test_queues_are_isolated_by_name(session_factory, make_job, clock):
    first = DispatchQueue(session_factory, name="one", clock=clock)
    second = DispatchQueue(session_factory, name="two", clock=clock)
    job = make_job()

    first.enqueue(job.id)

    assert second.claim() == []
    assert second.enqueue(job.id) is not None
