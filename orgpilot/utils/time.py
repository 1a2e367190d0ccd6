"""Timezone helpers.

Database columns store *naive* UTC datetimes; everything else uses aware
UTC.  Import these helpers instead of calling ``datetime.now()`` directly.
"""

import time
from datetime import datetime
from datetime import timezone


def utc_now() -> datetime:  # noqa: D401
    """Return *aware* current time in UTC."""

    return datetime.now(timezone.utc)


def utc_now_naive() -> datetime:  # noqa: D401
    """Return *naive* current time in UTC for database columns."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def elapsed_ms(started_monotonic: float) -> int:
    """Milliseconds since a ``time.monotonic()`` reading."""

    return int((time.monotonic() - started_monotonic) * 1000)


__all__ = ["elapsed_ms", "utc_now", "utc_now_naive"]
