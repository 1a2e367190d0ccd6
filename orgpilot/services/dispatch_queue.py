"""Database-backed dispatch queue between ingestion and the worker pool.

Entries are keyed by job id: enqueueing a job that already has a waiting
or active entry is a no-op, which absorbs duplicate upstream events.
Delivery is at-least-once.  A failed entry is rescheduled with
exponential backoff until ``max_attempts`` is reached, after which it
stays ``failed``.  Finished entries are pruned down to a bounded
retention count.  :meth:`DispatchQueue.pending_count` backs the
``dispatch_queue_depth`` gauge.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from orgpilot import constants
from orgpilot.database import db_session
from orgpilot.metrics import queue_retries_total
from orgpilot.models.enums import QueueEntryStatus
from orgpilot.models.models import QueueEntry
from orgpilot.services.cache import Clock
from orgpilot.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

_IN_FLIGHT = (QueueEntryStatus.WAITING.value, QueueEntryStatus.ACTIVE.value)


@dataclass
class QueueOptions:
    attempts: int = 3
    backoff_s: float = 5.0
    keep_completed: int = 100
    keep_failed: int = 200


@dataclass
class ClaimedEntry:
    id: int
    job_id: int
    payload: Dict[str, Any]
    attempt: int
    max_attempts: int

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts


class DispatchQueue:
    def __init__(
        self,
        session_factory: sessionmaker,
        name: str = constants.AGENT_QUEUE_NAME,
        options: Optional[QueueOptions] = None,
        clock: Clock = utc_now_naive,
    ):
        self._session_factory = session_factory
        self.name = name
        self.options = options or QueueOptions()
        self._clock = clock

    @staticmethod
    def backoff_delay(base_s: float, attempt: int) -> float:
        """Delay before retrying after *attempt* (1-based) failed."""

        return base_s * (2 ** max(attempt - 1, 0))

    def enqueue(self, job_id: int, payload: Optional[Dict[str, Any]] = None) -> Optional[int]:
        """Add *job_id* unless it already has an in-flight entry.

        Returns the new entry id, or ``None`` when deduplicated.
        """

        with db_session(self._session_factory) as db:
            existing = (
                db.query(QueueEntry)
                .filter(
                    QueueEntry.queue == self.name,
                    QueueEntry.job_id == job_id,
                    QueueEntry.status.in_(_IN_FLIGHT),
                )
                .first()
            )
            if existing is not None:
                logger.info(f"Job {job_id} already queued as entry {existing.id}; skipping")
                return None

            entry = QueueEntry(
                queue=self.name,
                job_id=job_id,
                payload=dict(payload or {}),
                status=QueueEntryStatus.WAITING.value,
                attempts=0,
                max_attempts=self.options.attempts,
                available_at=self._clock(),
            )
            db.add(entry)
            db.flush()
            entry_id = entry.id

        logger.info(f"Enqueued job {job_id} as entry {entry_id}")
        return entry_id

    def claim(self, limit: int = 1) -> List[ClaimedEntry]:
        """Move up to *limit* due entries to ``active`` and return them.

        Each row is claimed with a conditional UPDATE so two pollers never
        receive the same entry.
        """

        now = self._clock()
        claimed: List[ClaimedEntry] = []
        with db_session(self._session_factory) as db:
            candidates = (
                db.query(QueueEntry)
                .filter(
                    QueueEntry.queue == self.name,
                    QueueEntry.status == QueueEntryStatus.WAITING.value,
                    QueueEntry.available_at <= now,
                )
                .order_by(QueueEntry.available_at.asc(), QueueEntry.id.asc())
                .limit(limit)
                .all()
            )
            for entry in candidates:
                result = db.execute(
                    update(QueueEntry)
                    .where(QueueEntry.id == entry.id, QueueEntry.status == QueueEntryStatus.WAITING.value)
                    .values(status=QueueEntryStatus.ACTIVE.value, attempts=QueueEntry.attempts + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                claimed.append(
                    ClaimedEntry(
                        id=entry.id,
                        job_id=entry.job_id,
                        payload=dict(entry.payload or {}),
                        attempt=(entry.attempts or 0) + 1,
                        max_attempts=entry.max_attempts,
                    )
                )
        return claimed

    def complete(self, entry_id: int) -> None:
        with db_session(self._session_factory) as db:
            entry = db.get(QueueEntry, entry_id)
            if entry is None:
                return
            entry.status = QueueEntryStatus.COMPLETED.value
            entry.finished_at = self._clock()
        self.prune()

    def fail(self, entry_id: int, error: str) -> bool:
        """Record a failed attempt. Returns True when the entry will be retried."""

        with db_session(self._session_factory) as db:
            entry = db.get(QueueEntry, entry_id)
            if entry is None:
                return False
            entry.last_error = error
            if entry.attempts < entry.max_attempts:
                delay = self.backoff_delay(self.options.backoff_s, entry.attempts)
                entry.status = QueueEntryStatus.WAITING.value
                entry.available_at = self._clock() + timedelta(seconds=delay)
                will_retry = True
                logger.warning(
                    f"Entry {entry_id} (job {entry.job_id}) failed attempt {entry.attempts}/"
                    f"{entry.max_attempts}; retrying in {delay:.0f}s"
                )
            else:
                entry.status = QueueEntryStatus.FAILED.value
                entry.finished_at = self._clock()
                will_retry = False
                logger.error(f"Entry {entry_id} (job {entry.job_id}) failed permanently: {error}")

        if will_retry:
            queue_retries_total.inc()
        else:
            self.prune()
        return will_retry

    def prune(self) -> int:
        """Delete finished entries beyond the retention counts."""

        removed = 0
        keep = {
            QueueEntryStatus.COMPLETED.value: self.options.keep_completed,
            QueueEntryStatus.FAILED.value: self.options.keep_failed,
        }
        with db_session(self._session_factory) as db:
            for status, retain in keep.items():
                stale_ids = [
                    row.id
                    for row in db.query(QueueEntry.id)
                    .filter(QueueEntry.queue == self.name, QueueEntry.status == status)
                    .order_by(QueueEntry.id.desc())
                    .offset(retain)
                    .all()
                ]
                if stale_ids:
                    removed += (
                        db.query(QueueEntry)
                        .filter(QueueEntry.id.in_(stale_ids))
                        .delete(synchronize_session=False)
                    )
        if removed:
            logger.debug(f"Pruned {removed} finished queue entries")
        return removed

    def pending_count(self) -> int:
        with db_session(self._session_factory) as db:
            return (
                db.query(QueueEntry)
                .filter(QueueEntry.queue == self.name, QueueEntry.status.in_(_IN_FLIGHT))
                .count()
            )
