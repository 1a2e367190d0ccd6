"""Centralised configuration helper.

All runtime knobs are read from the process environment (optionally seeded
from a ``.env`` file via *python-dotenv*) into a single :class:`Settings`
dataclass.  Code never calls ``os.getenv`` directly; it asks
:func:`get_settings` instead.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# ``_REPO_ROOT`` is the directory holding ``pyproject.toml`` (one level above
# the ``orgpilot`` package).
_REPO_ROOT = Path(__file__).resolve().parents[2]

MOCK_MODEL = "gpt-mock"


def _truthy(value: str | None) -> bool:  # noqa: D401
    """Return *True* when *value* looks like an affirmative string."""

    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Settings:  # noqa: D401
    """Lightweight settings container populated from environment variables."""

    # Runtime flags -----------------------------------------------------
    testing: bool
    auth_disabled: bool

    # Secrets -----------------------------------------------------------
    jwt_secret: str
    fernet_secret: Any
    slack_signing_secret: Any
    openai_api_key: Any

    # Database ---------------------------------------------------------
    database_url: str

    # Misc --------------------------------------------------------------
    log_level: str
    dev_user_email: str
    slack_api_base: str

    # Agent -------------------------------------------------------------
    agent_model: str
    agent_max_turns: int
    agent_max_tokens: int

    # Salesforce --------------------------------------------------------
    salesforce_api_version: str
    salesforce_login_url: str
    salesforce_timeout_s: float
    salesforce_client_id: Any
    salesforce_client_secret: Any

    # Dispatch queue / workers -----------------------------------------
    queue_attempts: int
    queue_backoff_s: float
    queue_keep_completed: int
    queue_keep_failed: int
    worker_concurrency: int
    worker_poll_interval_s: float

    # Ingress de-duplication -------------------------------------------
    dedup_window_s: int
    dedup_max_events: int

    # Tool output -------------------------------------------------------
    tool_sample_rows: int

    @property
    def uses_mock_model(self) -> bool:  # noqa: D401
        return self.agent_model == MOCK_MODEL


# ---------------------------------------------------------------------------
# Accessor: values re-read on every call so tests can tweak the env
# ---------------------------------------------------------------------------


def _load_settings() -> Settings:  # noqa: D401
    """Populate :class:`Settings` from environment variables."""

    env_path = _REPO_ROOT / ".env"
    if env_path.exists():
        # Explicit process env wins over the file.
        load_dotenv(env_path, override=False)

    testing = _truthy(os.getenv("TESTING"))

    return Settings(
        testing=testing,
        auth_disabled=_truthy(os.getenv("AUTH_DISABLED")),
        jwt_secret=os.getenv("JWT_SECRET", "dev-secret"),
        fernet_secret=os.getenv("FERNET_SECRET"),
        slack_signing_secret=os.getenv("SLACK_SIGNING_SECRET"),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        database_url=os.getenv("DATABASE_URL", ""),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        dev_user_email=os.getenv("DEV_USER_EMAIL", "dev@local"),
        slack_api_base=os.getenv("SLACK_API_BASE", "https://slack.com/api"),
        agent_model=os.getenv("AGENT_MODEL", "gpt-4o"),
        agent_max_turns=int(os.getenv("AGENT_MAX_TURNS", "10")),
        agent_max_tokens=int(os.getenv("AGENT_MAX_TOKENS", "4096")),
        salesforce_api_version=os.getenv("SALESFORCE_API_VERSION", "v60.0"),
        salesforce_login_url=os.getenv("SALESFORCE_LOGIN_URL", "https://login.salesforce.com"),
        salesforce_timeout_s=float(os.getenv("SALESFORCE_TIMEOUT_S", "30")),
        salesforce_client_id=os.getenv("SALESFORCE_CONSUMER_KEY"),
        salesforce_client_secret=os.getenv("SALESFORCE_CONSUMER_SECRET"),
        queue_attempts=int(os.getenv("QUEUE_ATTEMPTS", "3")),
        queue_backoff_s=float(os.getenv("QUEUE_BACKOFF_S", "5")),
        queue_keep_completed=int(os.getenv("QUEUE_KEEP_COMPLETED", "100")),
        queue_keep_failed=int(os.getenv("QUEUE_KEEP_FAILED", "200")),
        worker_concurrency=int(os.getenv("WORKER_CONCURRENCY", "5")),
        worker_poll_interval_s=float(os.getenv("WORKER_POLL_INTERVAL_S", "1.0")),
        dedup_window_s=int(os.getenv("DEDUP_WINDOW_S", "300")),
        dedup_max_events=int(os.getenv("DEDUP_MAX_EVENTS", "10000")),
        tool_sample_rows=int(os.getenv("TOOL_SAMPLE_ROWS", "50")),
    )


# ------------------------------------------------------------------
# Runtime validation: fail fast when *required* secrets are missing.
# ------------------------------------------------------------------


def _validate_required(settings: Settings) -> None:  # noqa: D401
    """Abort startup when mandatory configuration is missing.

    Slack deliveries cannot be authenticated without the signing secret and
    org tokens cannot be decrypted without the Fernet key, so both are
    checked here rather than on the first webhook.
    """

    if settings.testing:
        return

    missing_vars = []

    if not settings.uses_mock_model and not settings.openai_api_key:
        missing_vars.append("OPENAI_API_KEY")

    if not settings.fernet_secret:
        missing_vars.append("FERNET_SECRET")

    if not settings.slack_signing_secret:
        missing_vars.append("SLACK_SIGNING_SECRET")

    if not settings.auth_disabled:
        weak = settings.jwt_secret.strip() in {"", "dev-secret"} or len(settings.jwt_secret) < 16
        if weak:
            missing_vars.append("JWT_SECRET (must be >=16 chars, not 'dev-secret')")

    if missing_vars:
        raise RuntimeError(
            f"CRITICAL: Missing required environment variables: {', '.join(missing_vars)}\n"
            f"Set these in your .env file or deployment environment."
        )


def get_settings() -> Settings:  # noqa: D401
    """Return :class:`Settings` instance loaded from environment."""

    settings = _load_settings()
    _validate_required(settings)
    return settings


__all__ = [
    "MOCK_MODEL",
    "Settings",
    "get_settings",
]
