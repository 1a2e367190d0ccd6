"""In-memory de-duplication of Slack event deliveries.

Slack retries any event it did not see acknowledged within three seconds,
so the same ``event_id`` can arrive several times.  Seen ids are kept for
``window_s`` seconds; a periodic APScheduler job prunes expired ids and the
whole set is dropped if it ever grows beyond ``max_events``.
"""

import logging
import threading
import time
from typing import Callable
from typing import Dict

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from orgpilot import constants

logger = logging.getLogger(__name__)


class EventDeduplicator:
    """Check-and-record set of recently processed event ids."""

    def __init__(
        self,
        window_s: int = 300,
        max_events: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_s = window_s
        self.max_events = max_events
        self._clock = clock
        self._seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def seen(self, event_id: str) -> bool:
        """Return True if *event_id* was already recorded, else record it."""

        now = self._clock()
        with self._lock:
            recorded_at = self._seen.get(event_id)
            if recorded_at is not None and now - recorded_at <= self.window_s:
                return True
            if len(self._seen) >= self.max_events:
                logger.warning(f"Event de-dup set reached {self.max_events} ids; clearing")
                self._seen.clear()
            self._seen[event_id] = now
            return False

    def prune(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [eid for eid, ts in self._seen.items() if now - ts > self.window_s]
            for eid in expired:
                del self._seen[eid]
        if expired:
            logger.debug(f"Pruned {len(expired)} expired Slack event ids")
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)

    def schedule(self, scheduler: AsyncIOScheduler) -> None:
        """Register the periodic prune job on *scheduler*."""

        scheduler.add_job(
            self.prune,
            IntervalTrigger(seconds=constants.DEDUP_CLEAR_INTERVAL_S),
            id="slack_event_dedup_prune",
            replace_existing=True,
        )
        logger.info("Scheduled Slack event de-dup pruning")
