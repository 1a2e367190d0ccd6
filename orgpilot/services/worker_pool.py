"""Worker pool that drains the dispatch queue.

The pool polls :class:`~orgpilot.services.dispatch_queue.DispatchQueue`
and runs up to ``concurrency`` jobs at once.  Each job is processed
end-to-end by one worker through :class:`AgentJobHandler`.  A handler
exception marks the job ``failed`` and is re-raised so the pool can hand
the entry back to the queue for a retry with backoff.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional
from typing import Set

from sqlalchemy.orm import sessionmaker

from orgpilot.crud import crud
from orgpilot.database import db_session
from orgpilot.metrics import jobs_finished_total
from orgpilot.models.enums import JobStatus
from orgpilot.models.enums import LogLevel
from orgpilot.services.agent_loop import AgentLoop
from orgpilot.services.agent_loop import AgentLoopRequest
from orgpilot.services.agent_loop import LoopOutcome
from orgpilot.services.dispatch_queue import ClaimedEntry
from orgpilot.services.dispatch_queue import DispatchQueue
from orgpilot.services.slack import ReplyChannel
from orgpilot.services.slack import SlackService
from orgpilot.utils.crypto import decrypt
from orgpilot.utils.time import elapsed_ms

logger = logging.getLogger(__name__)

FAILURE_MESSAGE = "Something went wrong while processing your request. Please try again later.\n\nError: {error}"
UNEXPECTED_STOP_MESSAGE = (
    "I stopped before finishing this request (reason: {reason}). You can retry the job or rephrase your message."
)


@dataclass
class _JobSnapshot:
    id: int
    account_id: int
    org_id: Optional[int]
    user_id: Optional[int]
    message_text: str
    channel: Optional[str]
    thread_ts: Optional[str]


class AgentJobHandler:
    """Runs one queue entry through the agent loop and settles the job."""

    def __init__(self, session_factory: sessionmaker, agent_loop: AgentLoop, slack: Optional[SlackService]):
        self._session_factory = session_factory
        self._loop = agent_loop
        self._slack = slack

    async def handle(self, entry: ClaimedEntry) -> None:
        started = time.monotonic()
        response = entry.payload.get("response")

        job = self._start(entry, resume=response is not None)
        if job is None:
            return

        reply = self._reply_channel(job)
        try:
            if job.org_id is None:
                raise RuntimeError("Job has no target org")
            result = await self._loop.run(
                AgentLoopRequest(
                    job_id=job.id,
                    org_id=job.org_id,
                    account_id=job.account_id,
                    user_id=job.user_id,
                    message_text=response or job.message_text,
                    reply=reply,
                    # a retried continuation resumes from its checkpoint instead
                    continuation=response is not None and entry.attempt == 1,
                    started_monotonic=started,
                )
            )
        except Exception as exc:
            self._fail(job.id, started, str(exc))
            raise

        if result.outcome == LoopOutcome.ERROR:
            # The loop already told the user; no automatic retry after partial tool execution.
            self._fail(job.id, started, result.error or "Agent loop error")
        elif result.outcome == LoopOutcome.UNEXPECTED_STOP:
            reason = result.finish_reason or "unknown"
            self._fail(job.id, started, f"Unexpected stop reason: {reason}")
            if reply is not None:
                await reply.send_quietly(UNEXPECTED_STOP_MESSAGE.format(reason=reason))
        else:
            jobs_finished_total.labels(status=JobStatus.COMPLETED.value).inc()

    async def handle_failure(self, entry: ClaimedEntry, exc: BaseException, will_retry: bool) -> None:
        """Called by the pool after the queue has recorded a failed attempt.

        The user hears about a failure only once, after the final queue
        attempt; earlier attempts put the job back to ``queued`` silently.
        """

        with db_session(self._session_factory) as db:
            job = crud.get_job(db, entry.job_id)
            if job is None:
                return
            if will_retry:
                if JobStatus(job.status) == JobStatus.FAILED:
                    crud.retry_job(
                        db,
                        job.id,
                        reason=f"Retrying after error (attempt {entry.attempt + 1}/{entry.max_attempts}): {exc}",
                    )
                return
            if JobStatus(job.status) not in (JobStatus.FAILED, JobStatus.COMPLETED):
                crud.fail_job(db, job.id, error=str(exc))
            snapshot = self._snapshot(job)

        reply = self._reply_channel(snapshot)
        if reply is not None:
            await reply.send_quietly(FAILURE_MESSAGE.format(error=exc))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _snapshot(job) -> _JobSnapshot:
        return _JobSnapshot(
            id=job.id,
            account_id=job.account_id,
            org_id=job.org_id,
            user_id=job.user_id,
            message_text=job.description or job.title,
            channel=job.slack_channel,
            thread_ts=job.slack_thread_ts,
        )

    def _start(self, entry: ClaimedEntry, *, resume: bool) -> Optional[_JobSnapshot]:
        with db_session(self._session_factory) as db:
            job = crud.get_job(db, entry.job_id)
            if job is None:
                logger.warning(f"Job {entry.job_id} not found - may have been deleted")
                return None
            status = JobStatus(job.status)
            if status == JobStatus.COMPLETED:
                logger.info(f"Job {job.id} already completed; dropping entry {entry.id}")
                return None
            if status == JobStatus.RUNNING and not resume:
                logger.info(f"Job {job.id} is already running; dropping entry {entry.id}")
                return None

            job = crud.mark_job_running(db, job.id, resume=resume)
            crud.append_job_log(
                db, job.id, LogLevel.INFO, f"Job started (attempt {entry.attempt}/{entry.max_attempts})"
            )
            logger.info(f"Starting job {job.id}: {job.title[:50]}")
            return self._snapshot(job)

    def _fail(self, job_id: int, started: float, error: str) -> None:
        try:
            with db_session(self._session_factory) as db:
                crud.fail_job(db, job_id, duration_ms=elapsed_ms(started), error=error)
        except Exception as commit_error:  # noqa: BLE001
            logger.error(f"Failed to commit error state for job {job_id}: {commit_error}")
            return
        jobs_finished_total.labels(status=JobStatus.FAILED.value).inc()
        logger.error(f"Job {job_id} failed: {error}")

    def _reply_channel(self, job: _JobSnapshot) -> Optional[ReplyChannel]:
        if self._slack is None or not job.channel or not job.thread_ts:
            return None
        with db_session(self._session_factory) as db:
            connection = crud.get_slack_connection_for_account(db, job.account_id)
            token = decrypt(connection.bot_token) if connection else None
        if not token:
            logger.warning(f"No Slack connection for account {job.account_id}; replies disabled for job {job.id}")
            return None
        return self._slack.reply_channel(token, job.channel, job.thread_ts)


class WorkerPool:
    """Fixed-size pool polling the dispatch queue."""

    def __init__(
        self,
        queue: DispatchQueue,
        handler: AgentJobHandler,
        *,
        concurrency: int = 5,
        poll_interval_s: float = 1.0,
    ):
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval_s = poll_interval_s
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._active: Set[asyncio.Task] = set()

    async def start(self) -> None:
        if self._running:
            logger.warning("Worker pool already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info(f"Worker pool started with {self.concurrency} workers")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._active:
            await asyncio.gather(*self._active, return_exceptions=True)
        logger.info("Worker pool stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                free = self.concurrency - len(self._active)
                if free > 0:
                    for entry in self.queue.claim(free):
                        task = asyncio.create_task(self.process(entry))
                        self._active.add(task)
                        task.add_done_callback(self._active.discard)
            except Exception as e:
                logger.exception(f"Error in worker pool loop: {e}")

            await asyncio.sleep(self.poll_interval_s)

    async def process(self, entry: ClaimedEntry) -> None:
        """Run one entry and settle it in the queue."""

        try:
            await self.handler.handle(entry)
        except Exception as exc:
            if entry.is_last_attempt:
                logger.exception(f"Worker failed on job {entry.job_id} (entry {entry.id}); no attempts left")
            else:
                logger.exception(
                    f"Worker failed on job {entry.job_id} (entry {entry.id}), "
                    f"attempt {entry.attempt}/{entry.max_attempts}"
                )
            will_retry = self.queue.fail(entry.id, str(exc))
            await self.handler.handle_failure(entry, exc, will_retry)
            return
        self.queue.complete(entry.id)

    async def drain(self) -> int:
        """Process every currently due entry; returns how many ran."""

        processed = 0
        while True:
            entries = self.queue.claim(self.concurrency)
            if not entries:
                return processed
            await asyncio.gather(*(self.process(entry) for entry in entries))
            processed += len(entries)
