"""TTL cache backed by the ``org_metadata_cache`` / ``org_component_cache`` tables.

An entry is valid iff ``now <= fetched_at + ttl_seconds``.  Writes are a
single ``INSERT .. ON CONFLICT (org_id, cache_key) DO UPDATE`` statement so
concurrent refreshes of the same key resolve to last-writer-wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Optional

from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects import sqlite
from sqlalchemy.orm import Session
from sqlalchemy.orm import sessionmaker

from orgpilot.database import db_session
from orgpilot.metrics import cache_lookups_total
from orgpilot.models.models import OrgComponentCache
from orgpilot.models.models import OrgMetadataCache
from orgpilot.utils.time import utc_now_naive

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class CachedValue:
    data: Any
    fetched_at: datetime
    ttl_seconds: int

    def is_valid(self, now: datetime) -> bool:
        return now <= self.fetched_at + timedelta(seconds=self.ttl_seconds)


class TTLCache:
    """One cache tier.

    ``model`` selects the backing table; ``tier`` is only used for metrics
    and log lines.
    """

    def __init__(self, session_factory: sessionmaker, model, tier: str, clock: Clock = utc_now_naive):
        self._session_factory = session_factory
        self._model = model
        self.tier = tier
        self._clock = clock

    # ------------------------------------------------------------------
    # Primitive operations
    # ------------------------------------------------------------------

    def lookup(self, org_id: int, key: str) -> Optional[CachedValue]:
        """Return the entry if present *and* unexpired."""

        with db_session(self._session_factory) as db:
            row = db.query(self._model).filter(self._model.org_id == org_id, self._model.cache_key == key).first()
            if row is None:
                return None
            value = CachedValue(data=row.data, fetched_at=row.fetched_at, ttl_seconds=row.ttl_seconds)

        if not value.is_valid(self._clock()):
            return None
        return value

    def store(self, org_id: int, key: str, data: Any, ttl_seconds: int) -> None:
        values = {
            "org_id": org_id,
            "cache_key": key,
            "data": data,
            "fetched_at": self._clock(),
            "ttl_seconds": ttl_seconds,
        }
        with db_session(self._session_factory) as db:
            self._upsert(db, values)

    def invalidate(self, org_id: int, key: str) -> None:
        with db_session(self._session_factory) as db:
            db.query(self._model).filter(self._model.org_id == org_id, self._model.cache_key == key).delete(
                synchronize_session=False
            )
        logger.info(f"Invalidated {self.tier} cache entry {key} for org {org_id}")

    async def get_or_fetch(
        self,
        org_id: int,
        key: str,
        ttl_seconds: int,
        fetch: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Serve *key* from cache or run *fetch* and store its result."""

        cached = self.lookup(org_id, key)
        if cached is not None:
            cache_lookups_total.labels(tier=self.tier, result="hit").inc()
            return cached.data

        cache_lookups_total.labels(tier=self.tier, result="miss").inc()
        data = await fetch()
        self.store(org_id, key, data, ttl_seconds)
        return data

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _upsert(self, db: Session, values: dict) -> None:
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:  # pragma: no cover
            self._merge(db, values)
            return

        stmt = insert(self._model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["org_id", "cache_key"],
            set_={
                "data": stmt.excluded.data,
                "fetched_at": stmt.excluded.fetched_at,
                "ttl_seconds": stmt.excluded.ttl_seconds,
            },
        )
        db.execute(stmt)

    def _merge(self, db: Session, values: dict) -> None:  # pragma: no cover
        row = (
            db.query(self._model)
            .filter(self._model.org_id == values["org_id"], self._model.cache_key == values["cache_key"])
            .first()
        )
        if row is None:
            db.add(self._model(**values))
        else:
            row.data = values["data"]
            row.fetched_at = values["fetched_at"]
            row.ttl_seconds = values["ttl_seconds"]


def inventory_cache(session_factory: sessionmaker, clock: Clock = utc_now_naive) -> TTLCache:
    return TTLCache(session_factory, OrgMetadataCache, "inventory", clock)


def component_cache(session_factory: sessionmaker, clock: Clock = utc_now_naive) -> TTLCache:
    return TTLCache(session_factory, OrgComponentCache, "component", clock)
