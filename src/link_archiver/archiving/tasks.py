"""Celery task for the content archival pipeline.

``archive_content_task``
    Runs :class:`~link_archiver.archiving.archiver.Archiver` for one archive.

Task naming convention::

    link_archiver.archiving.tasks.<action>

Retry policy:
    Pipeline failures are recorded on the archive by the orchestrator and do
    not raise.  When the recorded failure is transient (``timeout`` or
    ``connection_failed``) the task re-dispatches itself with exponential
    backoff (``retry_backoff_base * 2**retry_count`` seconds) until
    ``max_retries`` total attempts have been made.  Each attempt enters
    through the ``failed → processing`` retry transition, so the archive's
    transition log shows every attempt.

Database updates:
    The orchestrator uses synchronous sessions (``get_sync_session()``) from
    inside ``asyncio.run()``; no async engine is involved.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from link_archiver.archiving.archiver import Archiver
from link_archiver.config.settings import get_archive_settings
from link_archiver.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def retry_countdown(retry_count: int, base: float) -> float:
    """Return the delay in seconds before attempt ``retry_count + 1``."""
    return base * (2**retry_count)


@celery_app.task(
    name="link_archiver.archiving.tasks.archive_content_task",
    bind=False,
    acks_late=True,
    max_retries=0,
)
def archive_content_task(archive_id: str, retry_count: int = 0) -> dict[str, Any]:
    """Archive the content behind one link.

    Args:
        archive_id: UUID string of the ContentArchive to process.
        retry_count: Number of earlier attempts for this archive.

    Returns:
        Dict describing the outcome (``archive_id``, ``state``, ``reason``,
        ``stage``, ``retryable``, ``skipped``, ``retry_count``) plus
        ``retry_scheduled``.
    """
    settings = get_archive_settings()
    logger.info("archiver: archive_content_task started for archive=%s attempt=%d", archive_id, retry_count + 1)

    outcome = asyncio.run(Archiver(settings).run(archive_id, retry_count=retry_count))
    result = outcome.as_dict()
    result["retry_scheduled"] = False
    # A failed archive is retried under the count recorded in its log.
    retry_count = outcome.retry_count

    if outcome.retryable and retry_count + 1 < settings.max_retries:
        countdown = retry_countdown(retry_count, settings.retry_backoff_base)
        archive_content_task.apply_async(
            args=[archive_id],
            kwargs={"retry_count": retry_count + 1},
            countdown=countdown,
        )
        result["retry_scheduled"] = True
        logger.info(
            "archiver: retrying archive %s in %.0fs (attempt %d of %d)",
            archive_id,
            countdown,
            retry_count + 2,
            settings.max_retries,
        )
    elif outcome.retryable:
        logger.warning(
            "archiver: archive %s failed after %d attempts (%s)",
            archive_id,
            retry_count + 1,
            outcome.reason,
        )

    return result
