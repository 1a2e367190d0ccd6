"""Job ledger and tenancy lookups.

Every status change goes through :func:`_transition`, which rejects moves
the job state machine does not allow:

    queued ──▶ running ──▶ completed | failed | waiting_for_input | paused
    waiting_for_input / paused ──▶ running      (user responded)
    failed ──▶ queued                           (retry)
    queued ──▶ failed                           (worker failed before start)

:func:`request_input` is a ledger helper: none of the built-in tools ask
the user a question yet, so only callers outside the agent loop move a
job into ``waiting_for_input``.  :func:`respond_to_job` takes it out.
"""

from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from sqlalchemy.orm import Session

from orgpilot.models.enums import ACTIVE_JOB_STATUSES
from orgpilot.models.enums import JobStatus
from orgpilot.models.enums import JobType
from orgpilot.models.enums import LogLevel
from orgpilot.models.enums import TokenStatus
from orgpilot.models.models import Job
from orgpilot.models.models import JobArtifact
from orgpilot.models.models import JobLog
from orgpilot.models.models import Org
from orgpilot.models.models import OrgComponentCache
from orgpilot.models.models import OrgMetadataCache
from orgpilot.models.models import QueueEntry
from orgpilot.models.models import SlackConnection
from orgpilot.models.models import User
from orgpilot.utils.time import utc_now_naive

_ALLOWED_TRANSITIONS: Dict[JobStatus, set] = {
    JobStatus.QUEUED: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.WAITING_FOR_INPUT,
        JobStatus.PAUSED,
    },
    JobStatus.WAITING_FOR_INPUT: {JobStatus.RUNNING},
    JobStatus.PAUSED: {JobStatus.RUNNING},
    JobStatus.FAILED: {JobStatus.QUEUED},
    JobStatus.COMPLETED: set(),
}


class JobNotFound(LookupError):
    pass


class InvalidStateTransition(Exception):
    """Raised when a job is asked to move to a status it cannot reach."""

    def __init__(self, job_id: int, current: JobStatus, target: JobStatus, message: Optional[str] = None):
        self.job_id = job_id
        self.current = JobStatus(current)
        self.target = JobStatus(target)
        super().__init__(message or f"Job {job_id} cannot move from {self.current.value} to {self.target.value}")


class OrgBusyError(Exception):
    """Raised when an org still has queued or running jobs."""

    def __init__(self, org_id: int, active_jobs: int):
        self.org_id = org_id
        self.active_jobs = active_jobs
        super().__init__(f"Org {org_id} has {active_jobs} active job(s)")


# ---------------------------------------------------------------------------
# Tenancy lookups
# ---------------------------------------------------------------------------


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    """Case-insensitive e-mail lookup."""

    return db.query(User).filter(User.email == email.strip().lower()).first()


def get_slack_connection_by_workspace(db: Session, workspace_id: str) -> Optional[SlackConnection]:
    return db.query(SlackConnection).filter(SlackConnection.workspace_id == workspace_id).first()


def get_slack_connection_for_account(db: Session, account_id: int) -> Optional[SlackConnection]:
    return db.query(SlackConnection).filter(SlackConnection.account_id == account_id).first()


def get_org(db: Session, org_id: int) -> Optional[Org]:
    return db.query(Org).filter(Org.id == org_id).first()


def get_valid_orgs(db: Session, account_id: int) -> List[Org]:
    """Orgs of *account_id* whose stored token is still usable, oldest first."""

    return (
        db.query(Org)
        .filter(Org.account_id == account_id, Org.token_status == TokenStatus.VALID)
        .order_by(Org.id.asc())
        .all()
    )


def touch_org(db: Session, org_id: int, **fields: Any) -> Optional[Org]:
    """Update credential fields plus ``last_activity_at``."""

    org = get_org(db, org_id)
    if org is None:
        return None
    for key, value in fields.items():
        setattr(org, key, value)
    org.last_activity_at = utc_now_naive()
    db.commit()
    db.refresh(org)
    return org


def count_active_jobs_for_org(db: Session, org_id: int) -> int:
    return db.query(Job).filter(Job.org_id == org_id, Job.status.in_(ACTIVE_JOB_STATUSES)).count()


def disconnect_org(db: Session, org_id: int) -> None:
    """Delete an org and its cached metadata.

    Refused with :class:`OrgBusyError` while any of its jobs is queued or
    running.  Historical jobs keep their rows but lose the org reference.
    """

    active = count_active_jobs_for_org(db, org_id)
    if active:
        raise OrgBusyError(org_id, active)

    db.query(OrgMetadataCache).filter(OrgMetadataCache.org_id == org_id).delete(synchronize_session=False)
    db.query(OrgComponentCache).filter(OrgComponentCache.org_id == org_id).delete(synchronize_session=False)
    db.query(Job).filter(Job.org_id == org_id).update({Job.org_id: None}, synchronize_session=False)
    db.query(Org).filter(Org.id == org_id).delete(synchronize_session=False)
    db.commit()


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


def create_job(
    db: Session,
    *,
    account_id: int,
    org_id: Optional[int],
    user_id: Optional[int],
    title: str,
    description: Optional[str] = None,
    job_type: JobType = JobType.GENERAL,
    slack_channel: Optional[str] = None,
    slack_thread_ts: Optional[str] = None,
    conversation: Optional[List[Dict[str, Any]]] = None,
) -> Job:
    """Insert a new job in ``queued`` state."""

    job = Job(
        account_id=account_id,
        org_id=org_id,
        user_id=user_id,
        status=JobStatus.QUEUED,
        type=JobType(job_type),
        title=title,
        description=description,
        slack_channel=slack_channel,
        slack_thread_ts=slack_thread_ts,
        conversation=list(conversation or []),
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def get_job(db: Session, job_id: int) -> Optional[Job]:
    return db.query(Job).filter(Job.id == job_id).first()


def get_job_for_account(db: Session, job_id: int, account_id: int) -> Job:
    """Return the job or raise :class:`JobNotFound` (also for foreign jobs)."""

    job = db.query(Job).filter(Job.id == job_id, Job.account_id == account_id).first()
    if job is None:
        raise JobNotFound(f"Job {job_id} not found")
    return job


def _require_job(db: Session, job_id: int) -> Job:
    job = get_job(db, job_id)
    if job is None:
        raise JobNotFound(f"Job {job_id} not found")
    return job


def find_thread_job(db: Session, account_id: int, channel: str, thread_ts: str) -> Optional[Job]:
    """Latest job in a Slack thread that is bound to an org."""

    return (
        db.query(Job)
        .filter(
            Job.account_id == account_id,
            Job.slack_channel == channel,
            Job.slack_thread_ts == thread_ts,
            Job.org_id.isnot(None),
        )
        .order_by(Job.id.desc())
        .first()
    )


def latest_thread_transcript(
    db: Session,
    *,
    account_id: int,
    org_id: int,
    channel: Optional[str],
    thread_ts: Optional[str],
    exclude_job_id: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Transcript of the newest completed job in the same thread and org."""

    if not channel or not thread_ts:
        return []
    query = db.query(Job).filter(
        Job.account_id == account_id,
        Job.org_id == org_id,
        Job.slack_channel == channel,
        Job.slack_thread_ts == thread_ts,
        Job.status == JobStatus.COMPLETED,
    )
    if exclude_job_id is not None:
        query = query.filter(Job.id != exclude_job_id)
    job = query.order_by(Job.id.desc()).first()
    return list(job.conversation or []) if job else []


def _transition(job: Job, target: JobStatus, message: Optional[str] = None) -> None:
    current = JobStatus(job.status)
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransition(job.id, current, target, message)
    job.status = target


def mark_job_running(db: Session, job_id: int, *, resume: bool = False) -> Job:
    """queued → running.

    With *resume* a job that is already ``running`` (continuation after a
    user response) is accepted as-is.
    """

    job = _require_job(db, job_id)
    if not (resume and JobStatus(job.status) == JobStatus.RUNNING):
        _transition(job, JobStatus.RUNNING)
    job.attempts = (job.attempts or 0) + 1
    db.commit()
    db.refresh(job)
    return job


def complete_job(db: Session, job_id: int, *, duration_ms: Optional[int] = None) -> Job:
    job = _require_job(db, job_id)
    _transition(job, JobStatus.COMPLETED)
    job.completed_at = utc_now_naive()
    job.duration_ms = duration_ms
    job.pending_question = None
    db.commit()
    db.refresh(job)
    return job


def fail_job(
    db: Session,
    job_id: int,
    *,
    duration_ms: Optional[int] = None,
    error: Optional[str] = None,
) -> Job:
    job = _require_job(db, job_id)
    if JobStatus(job.status) != JobStatus.FAILED:
        _transition(job, JobStatus.FAILED)
    job.completed_at = utc_now_naive()
    job.duration_ms = duration_ms
    if error:
        _add_log(db, job.id, LogLevel.ERROR, f"Job failed: {error}")
    db.commit()
    db.refresh(job)
    return job


def request_input(db: Session, job_id: int, question: str) -> Job:
    """running → waiting_for_input, storing the question for the user."""

    job = _require_job(db, job_id)
    _transition(job, JobStatus.WAITING_FOR_INPUT)
    job.pending_question = question
    _add_log(db, job.id, LogLevel.INFO, f"Waiting for input: {question}")
    db.commit()
    db.refresh(job)
    return job


def respond_to_job(db: Session, job_id: int, response: str, *, account_id: Optional[int] = None) -> Job:
    """paused / waiting_for_input → running."""

    job = get_job_for_account(db, job_id, account_id) if account_id is not None else _require_job(db, job_id)
    if JobStatus(job.status) not in (JobStatus.PAUSED, JobStatus.WAITING_FOR_INPUT):
        raise InvalidStateTransition(
            job.id,
            job.status,
            JobStatus.RUNNING,
            "Job is not waiting for input",
        )
    _transition(job, JobStatus.RUNNING)
    job.pending_question = None
    _add_log(db, job.id, LogLevel.INFO, f"User responded: {response}")
    db.commit()
    db.refresh(job)
    return job


def retry_job(db: Session, job_id: int, *, account_id: Optional[int] = None, reason: str = "Job queued for retry") -> Job:
    """failed → queued, clearing completion data."""

    job = get_job_for_account(db, job_id, account_id) if account_id is not None else _require_job(db, job_id)
    _transition(job, JobStatus.QUEUED, "Only failed jobs can be retried")
    job.completed_at = None
    job.duration_ms = None
    job.pending_question = None
    _add_log(db, job.id, LogLevel.INFO, reason)
    db.commit()
    db.refresh(job)
    return job


def save_transcript(db: Session, job_id: int, turns: List[Dict[str, Any]], *, turn_count: Optional[int] = None) -> None:
    """Checkpoint the serialised transcript."""

    job = _require_job(db, job_id)
    job.conversation = list(turns)
    if turn_count is not None:
        job.turn_count = turn_count
    db.commit()


# ---------------------------------------------------------------------------
# Logs & artifacts (append-only)
# ---------------------------------------------------------------------------


def _add_log(db: Session, job_id: int, level: LogLevel, message: str) -> JobLog:
    row = JobLog(job_id=job_id, level=LogLevel(level), message=message, timestamp=utc_now_naive())
    db.add(row)
    return row


def append_job_log(db: Session, job_id: int, level: LogLevel, message: str) -> JobLog:
    row = _add_log(db, job_id, level, message)
    db.commit()
    return row


def get_job_logs(db: Session, job_id: int) -> List[JobLog]:
    return db.query(JobLog).filter(JobLog.job_id == job_id).order_by(JobLog.id.asc()).all()


def add_artifact(
    db: Session,
    job_id: int,
    *,
    artifact_type: str,
    filename: Optional[str] = None,
    content: Optional[str] = None,
    diff_url: Optional[str] = None,
    commit_hash: Optional[str] = None,
) -> JobArtifact:
    """Attach a write-once artifact to a job."""

    row = JobArtifact(
        job_id=job_id,
        type=artifact_type,
        filename=filename,
        content=content,
        diff_url=diff_url,
        commit_hash=commit_hash,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def get_queue_entries_for_job(db: Session, job_id: int) -> List[QueueEntry]:
    return db.query(QueueEntry).filter(QueueEntry.job_id == job_id).order_by(QueueEntry.id.asc()).all()
