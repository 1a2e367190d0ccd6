import logging
from contextlib import contextmanager
from typing import Iterator

from fastapi import Request
from sqlalchemy import Engine
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# Create Base class
Base = declarative_base()


def make_engine(db_url: str, **kwargs) -> Engine:
    """Create a SQLAlchemy engine with the given URL and options.

    Args:
        db_url: Database connection URL
        **kwargs: Additional arguments for create_engine

    Returns:
        A SQLAlchemy Engine instance
    """
    connect_args = kwargs.pop("connect_args", {})
    if "sqlite" in db_url:
        if "check_same_thread" not in connect_args:
            connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
        # A plain in-memory database is per-connection; share one connection
        # so every session sees the same tables.
        if ":memory:" in db_url:
            kwargs.setdefault("poolclass", StaticPool)

    return create_engine(db_url, connect_args=connect_args, **kwargs)


def make_sessionmaker(engine: Engine) -> sessionmaker:
    """Create a sessionmaker bound to the given engine.

    ``expire_on_commit=False`` keeps attributes readable after the
    ``db_session`` block commits, which background workers rely on when
    they hand snapshots of rows to the agent loop.
    """
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def resolve_database_url(database_url: str, testing: bool) -> str:
    if database_url:
        return database_url
    return "sqlite:///:memory:" if testing else "sqlite:///./orgpilot.db"


def initialize_database(engine: Engine) -> None:
    """Create all tables registered on :data:`Base`."""

    # Import models so they register with Base before create_all.
    from orgpilot.models import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def get_db(request: Request) -> Iterator[Session]:
    """FastAPI dependency yielding a session from the app's runtime."""

    factory = request.app.state.runtime.session_factory
    db = factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def db_session(session_factory: sessionmaker):
    """Session context manager for services and background tasks.

    1. Auto-commit on success
    2. Auto-rollback on error
    3. Always close session

    Usage:
        with db_session(factory) as db:
            crud.append_job_log(db, job_id, "info", "Job started")
    """
    session = session_factory()

    try:
        yield session
        session.commit()

    except Exception as e:
        session.rollback()
        logger.error(f"Database session rolled back due to error: {e}")
        raise

    finally:
        session.close()
