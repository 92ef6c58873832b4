"""Celery application for Link Archiver.

Configures the broker, result backend, serialization, task routing and
logging.  All configuration values are sourced from ``Settings`` so that no
secrets or environment-specific values are hard-coded here.

Usage (starting a worker)::

    celery -A link_archiver.workers.celery_app worker -Q archiving --loglevel=info

Usage (within application code)::

    from link_archiver.workers.celery_app import celery_app

    celery_app.send_task(
        "link_archiver.archiving.tasks.archive_content_task",
        args=[str(archive_id)],
    )
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import setup_logging, task_postrun, task_prerun, worker_process_init

from link_archiver.config.settings import get_settings
from link_archiver.core.logging_config import configure_logging, task_id_var

_logger = logging.getLogger(__name__)

settings = get_settings()

#: The global Celery application instance.
celery_app = Celery(
    "link_archiver",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["link_archiver.archiving.tasks"],
)

# ---------------------------------------------------------------------------
# Core configuration
# ---------------------------------------------------------------------------

celery_app.conf.update(
    # Serialization: task arguments and results must be JSON-serializable.
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Acknowledge after completion so a worker crash re-delivers the job.
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=86_400,
    # Each archival job makes at most a HEAD and six GETs with 15s read
    # timeouts; anything far beyond that is stuck.
    task_soft_time_limit=300,
    task_time_limit=360,
    task_routes={
        "link_archiver.archiving.tasks.*": {"queue": "archiving"},
    },
)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
@setup_logging.connect
def _configure_worker_logging(**kwargs: object) -> None:  # noqa: ARG001
    """Replace Celery's logging setup with the structlog configuration."""
    configure_logging(settings.log_level)


@task_prerun.connect
def _bind_task_id(task_id: str | None = None, **kwargs: object) -> None:  # noqa: ARG001
    task_id_var.set(task_id)


@task_postrun.connect
def _unbind_task_id(**kwargs: object) -> None:  # noqa: ARG001
    task_id_var.set(None)


# ---------------------------------------------------------------------------
# Engine disposal on fork
# ---------------------------------------------------------------------------
@worker_process_init.connect
def _dispose_engine_on_fork(**kwargs: object) -> None:  # noqa: ARG001
    """Drop pooled connections inherited from the parent after Celery forks.

    Sockets opened by the parent must not be shared with the child; disposing
    with ``close=False`` leaves the parent's connections alone and makes the
    child open its own.
    """
    from link_archiver.core import database as _db  # noqa: PLC0415

    if _db.get_engine.cache_info().currsize:
        _db.get_engine().dispose(close=False)
