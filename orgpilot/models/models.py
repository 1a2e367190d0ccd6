from sqlalchemy import JSON
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import UniqueConstraint
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from orgpilot.database import Base
from orgpilot.models.enums import JobStatus
from orgpilot.models.enums import JobType
from orgpilot.models.enums import LogLevel
from orgpilot.models.enums import OrgType
from orgpilot.models.enums import QueueEntryStatus
from orgpilot.models.enums import TokenStatus

# ---------------------------------------------------------------------------
# Tenancy: accounts, users and the Slack workspace connection
# ---------------------------------------------------------------------------


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    users = relationship("User", back_populates="account", cascade="all, delete-orphan")
    orgs = relationship("Org", back_populates="account", cascade="all, delete-orphan")


class User(Base):
    """Person allowed to talk to the bot; matched to Slack by e-mail."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    account = relationship("Account", back_populates="users")


class SlackConnection(Base):
    """Bot installation in one Slack workspace (``team_id``)."""

    __tablename__ = "slack_connections"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    workspace_id = Column(String, unique=True, nullable=False, index=True)
    workspace_name = Column(String, nullable=True)
    bot_user_id = Column(String, nullable=True)
    # Fernet-encrypted bot token
    bot_token = Column(Text, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


# ---------------------------------------------------------------------------
# Salesforce orgs
# ---------------------------------------------------------------------------


class Org(Base):
    """A connected Salesforce environment.

    Tokens and the client secret are stored Fernet-encrypted (see
    :pymod:`orgpilot.utils.crypto`).  ``consumer_key``/``consumer_secret``
    are only present for orgs connected through the client-credentials flow;
    those orgs get a fresh token before every job.
    """

    __tablename__ = "orgs"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(
        SAEnum(OrgType, native_enum=False, name="org_type_enum"),
        nullable=False,
        default=OrgType.PRODUCTION.value,
    )
    instance_url = Column(String, nullable=False)
    login_url = Column(String, nullable=True)

    # Credentials --------------------------------------------------------
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text, nullable=True)
    consumer_key = Column(String, nullable=True)
    consumer_secret = Column(Text, nullable=True)
    token_status = Column(
        SAEnum(TokenStatus, native_enum=False, name="token_status_enum"),
        nullable=False,
        default=TokenStatus.VALID.value,
    )

    last_activity_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    account = relationship("Account", back_populates="orgs")


# ---------------------------------------------------------------------------
# Job ledger
# ---------------------------------------------------------------------------


class Job(Base):
    """One user request and its processing lifecycle.

    queued → running → completed | failed | waiting_for_input
    """

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    org_id = Column(Integer, ForeignKey("orgs.id"), nullable=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    status = Column(
        SAEnum(JobStatus, native_enum=False, name="job_status_enum"),
        nullable=False,
        default=JobStatus.QUEUED.value,
    )
    type = Column(
        SAEnum(JobType, native_enum=False, name="job_type_enum"),
        nullable=False,
        default=JobType.GENERAL.value,
    )
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)

    # Serialised list of transcript turns (see orgpilot.schemas.transcript)
    conversation = Column(MutableList.as_mutable(JSON), nullable=False, default=list)
    pending_question = Column(Text, nullable=True)

    # Origin thread ------------------------------------------------------
    slack_channel = Column(String, nullable=True)
    slack_thread_ts = Column(String, nullable=True, index=True)

    # Counters -----------------------------------------------------------
    turn_count = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)

    # Timing -------------------------------------------------------------
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    logs = relationship("JobLog", back_populates="job", cascade="all, delete-orphan", order_by="JobLog.id")
    artifacts = relationship("JobArtifact", back_populates="job", cascade="all, delete-orphan")


class JobLog(Base):
    __tablename__ = "job_logs"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False, index=True)
    level = Column(
        SAEnum(LogLevel, native_enum=False, name="log_level_enum"),
        nullable=False,
        default=LogLevel.INFO.value,
    )
    message = Column(Text, nullable=False)
    timestamp = Column(DateTime, server_default=func.now())

    job = relationship("Job", back_populates="logs")


class JobArtifact(Base):
    __tablename__ = "job_artifacts"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # diff | file | test_report
    filename = Column(String, nullable=True)
    content = Column(Text, nullable=True)
    diff_url = Column(String, nullable=True)
    commit_hash = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    job = relationship("Job", back_populates="artifacts")


# ---------------------------------------------------------------------------
# Cache tiers, (org_id, cache_key) is unique in both
# ---------------------------------------------------------------------------


class OrgMetadataCache(Base):
    """Inventory tier: object/flow/class/permission-set lists."""

    __tablename__ = "org_metadata_cache"
    __table_args__ = (UniqueConstraint("org_id", "cache_key", name="uq_org_metadata_cache_key"),)

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(Integer, ForeignKey("orgs.id"), nullable=False, index=True)
    cache_key = Column(String, nullable=False)
    data = Column(JSON, nullable=True)
    fetched_at = Column(DateTime, nullable=False)
    ttl_seconds = Column(Integer, nullable=False)


class OrgComponentCache(Base):
    """Component tier: full source bodies of single components."""

    __tablename__ = "org_component_cache"
    __table_args__ = (UniqueConstraint("org_id", "cache_key", name="uq_org_component_cache_key"),)

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(Integer, ForeignKey("orgs.id"), nullable=False, index=True)
    cache_key = Column(String, nullable=False)
    data = Column(JSON, nullable=True)
    fetched_at = Column(DateTime, nullable=False)
    ttl_seconds = Column(Integer, nullable=False)


# ---------------------------------------------------------------------------
# Dispatch queue
# ---------------------------------------------------------------------------


class QueueEntry(Base):
    """Durable hand-off between ingestion and the worker pool."""

    __tablename__ = "queue_entries"

    id = Column(Integer, primary_key=True, index=True)
    queue = Column(String, nullable=False, index=True)
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(
        SAEnum(QueueEntryStatus, native_enum=False, name="queue_entry_status_enum"),
        nullable=False,
        default=QueueEntryStatus.WAITING.value,
        index=True,
    )
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    available_at = Column(DateTime, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    finished_at = Column(DateTime, nullable=True)
