"""Shared pytest fixtures for Link Archiver tests.

Fixture summary
---------------
db_engine         — In-memory SQLite engine with all tables created.
session_factory   — ``get_sync_session``-compatible factory bound to db_engine.
archive_settings  — ``ArchiveSettings`` with test-friendly retry backoff.
validator         — ``UrlValidator`` backed by :func:`fake_resolver`.
resolver          — :func:`fake_resolver` itself.

No test touches the network or a real DNS resolver: hostnames resolve through
``FAKE_DNS`` and HTTP traffic is intercepted by respx or
``httpx.MockTransport``.
"""

from __future__ import annotations

import os
import socket
from collections.abc import Callable, Generator
from contextlib import AbstractContextManager, contextmanager

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# ---------------------------------------------------------------------------
# Test environment bootstrap
# ---------------------------------------------------------------------------
# Set required env vars before any application modules are imported so that
# Settings() does not raise a ValidationError during collection.

_TEST_ENV_DEFAULTS: dict[str, str] = {
    "DATABASE_URL": "sqlite+pysqlite:///:memory:",
    "CELERY_BROKER_URL": "memory://",
    "CELERY_RESULT_BACKEND": "cache+memory://",
}

for _key, _default in _TEST_ENV_DEFAULTS.items():
    os.environ.setdefault(_key, _default)

# ---------------------------------------------------------------------------
# Application imports (after env bootstrap)
# ---------------------------------------------------------------------------

from link_archiver.archiving.url_validator import UrlValidator  # noqa: E402
from link_archiver.config.settings import (  # noqa: E402
    ArchiveSettings,
    get_archive_settings,
    get_settings,
)
from link_archiver.core.database import build_engine  # noqa: E402
from link_archiver.core.models import Base  # noqa: E402

# Clear the lru_cache so Settings() re-reads from the patched environment.
get_settings.cache_clear()
get_archive_settings.cache_clear()


# ---------------------------------------------------------------------------
# Fake DNS
# ---------------------------------------------------------------------------

FAKE_DNS: dict[str, list[str]] = {
    "example.com": ["93.184.216.34"],
    "www.example.com": ["93.184.216.34"],
    "cdn.example.org": ["93.184.216.35"],
    "dual.example.net": ["93.184.216.36", "10.1.2.3"],
    "internal.example.com": ["10.0.0.5"],
    "metadata.example.com": ["169.254.169.254"],
    "mapped.example.com": ["::ffff:127.0.0.1"],
    "v6.example.com": ["2606:2800:220:1:248:1893:25c8:1946"],
}


async def fake_resolver(hostname: str) -> list[str]:
    """Resolve ``hostname`` from :data:`FAKE_DNS`; unknown names fail like NXDOMAIN."""
    try:
        return list(FAKE_DNS[hostname.lower()])
    except KeyError:
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known") from None


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def db_engine() -> Generator[Engine, None, None]:
    """Fresh in-memory SQLite database per test.

    ``StaticPool`` keeps a single connection so every session sees the same
    in-memory database.
    """
    engine = build_engine(
        "sqlite+pysqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine: Engine) -> Callable[[], AbstractContextManager[Session]]:
    """Return a context-manager factory mirroring ``get_sync_session``."""
    factory = sessionmaker(bind=db_engine, expire_on_commit=False, autoflush=False)

    @contextmanager
    def _session() -> Generator[Session, None, None]:
        session = factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return _session


# ---------------------------------------------------------------------------
# Pipeline components
# ---------------------------------------------------------------------------


@pytest.fixture
def archive_settings() -> ArchiveSettings:
    return ArchiveSettings(
        connect_timeout=2.0,
        read_timeout=2.0,
        retry_backoff_base=2.0,
        user_agent_contact_url="https://links.example.com/about",
    )


@pytest.fixture
def validator() -> UrlValidator:
    return UrlValidator(resolver=fake_resolver, timeout=1.0)


@pytest.fixture
def resolver() -> Callable[[str], object]:
    """Expose :func:`fake_resolver` to tests that build their own validator."""
    return fake_resolver
