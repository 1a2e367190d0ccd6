"""Shared *Enum* definitions for SQLAlchemy & Pydantic models.

The Enums inherit from ``str`` so JSON serialisation renders plain strings
and equality checks against raw literals (``status == "queued"``) keep
working.
"""

from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    QUERY = "query"
    CODE_CHANGE = "code_change"
    TEST = "test"
    GENERAL = "general"


class OrgType(str, Enum):
    PRODUCTION = "production"
    SANDBOX = "sandbox"
    DEVELOPER = "developer"


class TokenStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    REVOKED = "revoked"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class QueueEntryStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class ToolMode(str, Enum):
    ALL = "all"
    DEVELOPMENT = "development"


# Jobs in these states still own a queue entry or a worker.
ACTIVE_JOB_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING)

__all__ = [
    "ACTIVE_JOB_STATUSES",
    "JobStatus",
    "JobType",
    "LogLevel",
    "OrgType",
    "QueueEntryStatus",
    "TokenStatus",
    "ToolMode",
]
