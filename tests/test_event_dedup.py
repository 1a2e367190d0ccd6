from apscheduler.schedulers.asyncio import AsyncIOScheduler

from orgpilot.services.event_dedup import EventDeduplicator


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_first_delivery_is_new_and_retry_is_duplicate():
    dedup = EventDeduplicator()

    assert dedup.seen("Ev1") is False
    assert dedup.seen("Ev1") is True
    assert dedup.seen("Ev2") is False


def test_ids_expire_after_window():
    clock = FakeClock()
    dedup = EventDeduplicator(window_s=300, clock=clock)
    dedup.seen("Ev1")

    clock.now += 300
    assert dedup.seen("Ev1") is True

    clock.now += 301
    assert dedup.seen("Ev1") is False


def test_prune_drops_expired_ids():
    clock = FakeClock()
    dedup = EventDeduplicator(window_s=10, clock=clock)
    dedup.seen("old")
    clock.now += 11
    dedup.seen("new")

    assert dedup.prune() == 1
    assert len(dedup) == 1


def test_set_is_cleared_when_full():
    dedup = EventDeduplicator(max_events=2)
    dedup.seen("a")
    dedup.seen("b")

    assert dedup.seen("c") is False
    assert len(dedup) == 1
    assert dedup.seen("a") is False


def test_schedule_registers_prune_job():
    scheduler = AsyncIOScheduler()
    dedup = EventDeduplicator()

    dedup.schedule(scheduler)

    job = scheduler.get_job("slack_event_dedup_prune")
    assert job is not None
    assert job.func == dedup.prune
