"""SQLAlchemy engine and session factory.

Provides:
- get_engine():         the lazily-created, process-wide Engine
- get_session_factory(): the sessionmaker bound to that engine
- get_sync_session():   context manager yielding a Session (rollback on error)
- Base.metadata:        re-exported so migrations can reference it without
                        importing individual models

The engine is created on first use rather than at import time so that the
Celery worker can dispose it after fork and tests can bind their own engine.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from functools import lru_cache
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from link_archiver.core.models.base import Base  # noqa: F401


def _get_database_url() -> str:
    """Resolve the database URL from application settings.

    Imported lazily so that test code can patch settings before the engine
    is created.
    """
    from link_archiver.config.settings import get_settings  # noqa: PLC0415

    return str(get_settings().database_url)


def build_engine(database_url: str, **engine_kwargs: Any) -> Engine:
    """Create an engine for ``database_url``.

    PostgreSQL engines get a connection pool sized for concurrent Celery
    workers.  SQLite engines get foreign-key enforcement switched on so
    ``ON DELETE CASCADE`` behaves as it does in PostgreSQL.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(database_url, **engine_kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        **engine_kwargs,
    )


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:  # noqa: ARG001
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@lru_cache
def get_engine() -> Engine:
    """Return the application-wide engine, creating it on first call."""
    return build_engine(_get_database_url())


@lru_cache
def get_session_factory() -> sessionmaker[Session]:
    """Return the application-wide session factory."""
    return sessionmaker(
        bind=get_engine(),
        expire_on_commit=False,
        autoflush=False,
    )


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy Session.

    The session is rolled back on exception and always closed.  Callers are
    responsible for committing so that transaction boundaries stay explicit.

    Usage::

        with get_sync_session() as session:
            archive = session.get(Archive, archive_id)
            ...
            session.commit()
    """
    session = get_session_factory()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
