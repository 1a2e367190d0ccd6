"""Helpers for logging tool calls safely.

Tool arguments can carry whole Apex bodies or, rarely, credentials pasted
into a query.  Everything that reaches a log line or a ``JobLog`` row goes
through :func:`loggable_args` / :func:`safe_preview` first.
"""

from typing import Any

SENSITIVE_KEYS = frozenset(
    {
        "token",
        "secret",
        "password",
        "passwd",
        "credential",
        "authorization",
        "access_token",
        "refresh_token",
        "private_key",
        "api_key",
    }
)

# Long free-text arguments (source bodies) are shortened, not redacted.
_LONG_VALUE_LIMIT = 120


def redact_sensitive_args(args: Any) -> Any:
    """Copy of *args* with values under sensitive keys replaced."""

    if isinstance(args, dict):
        redacted = {}
        for key, value in args.items():
            key_lower = str(key).lower()
            if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = redact_sensitive_args(value)
        return redacted
    if isinstance(args, list):
        return [redact_sensitive_args(item) for item in args]
    if isinstance(args, tuple):
        return tuple(redact_sensitive_args(item) for item in args)
    return args


def safe_preview(content: Any, max_len: int = 200) -> str:
    """Truncate *content* to *max_len* characters for logging."""

    if content is None:
        return "(None)"
    content_str = str(content)
    if len(content_str) <= max_len:
        return content_str
    return content_str[: max_len - 3] + "..."


def loggable_args(args: Any) -> Any:
    """Redacted args with long string values shortened to a length marker."""

    redacted = redact_sensitive_args(args)
    if not isinstance(redacted, dict):
        return redacted
    return {
        key: (f"<{len(value)} chars>" if isinstance(value, str) and len(value) > _LONG_VALUE_LIMIT else value)
        for key, value in redacted.items()
    }


__all__ = [
    "SENSITIVE_KEYS",
    "loggable_args",
    "redact_sensitive_args",
    "safe_preview",
]
