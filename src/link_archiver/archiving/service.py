"""Application-facing operations for links and their content archives.

:class:`ArchiveService` is the only entry point owner workflows need:

- :meth:`~ArchiveService.save_link` stores a link and queues its archive.
- :meth:`~ArchiveService.create_archive` queues an archive for an existing link.
- :meth:`~ArchiveService.get_archive` / :meth:`~ArchiveService.get_transitions`
  let callers poll for completion and inspect the audit trail.
- :meth:`~ArchiveService.retry_archive` re-queues a failed archive.
- :meth:`~ArchiveService.delete_link` removes a link, its archive and the
  archive's transition history.

Creation returns as soon as the ``pending`` archive is committed; the
archival job runs in a Celery worker.  Dispatch failures are logged and
never roll back the owner's data.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable

from sqlalchemy import select

from link_archiver.archiving.archiver import SessionFactory
from link_archiver.archiving.state_machine import ArchiveState, transition_to
from link_archiver.config.settings import ArchiveSettings, get_archive_settings
from link_archiver.core.database import get_sync_session
from link_archiver.core.exceptions import (
    ArchiveAlreadyExistsError,
    ArchiveNotFoundError,
    ErrorReason,
    InvalidTransitionError,
)
from link_archiver.core.models.archives import ContentArchive, ContentArchiveTransition
from link_archiver.core.models.links import Link

logger = logging.getLogger(__name__)

#: Callable that queues the archival job for an archive ID.
Enqueue = Callable[[uuid.UUID], None]

_DISABLED_MESSAGE = "Content archival is disabled"


def enqueue_archive_task(archive_id: uuid.UUID) -> None:
    """Dispatch :func:`~link_archiver.archiving.tasks.archive_content_task`."""
    from link_archiver.archiving.tasks import archive_content_task  # noqa: PLC0415

    archive_content_task.delay(str(archive_id))


class ArchiveService:
    """Creates, reads, retries and deletes content archives.

    Args:
        settings: Pipeline configuration (only ``enabled`` is read here).
        session_factory: Context-manager factory yielding sessions.
        enqueue: Job dispatcher.  Defaults to the Celery task.
    """

    def __init__(
        self,
        settings: ArchiveSettings | None = None,
        *,
        session_factory: SessionFactory = get_sync_session,
        enqueue: Enqueue | None = None,
    ) -> None:
        self._settings = settings or get_archive_settings()
        self._session_factory = session_factory
        self._enqueue = enqueue or enqueue_archive_task

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def save_link(self, url: str, submitted_url: str | None = None) -> Link:
        """Store a new link and its ``pending`` archive, then queue archival.

        The link and archive are committed together.  The returned link has
        ``content_archive`` loaded.
        """
        with self._session_factory() as session:
            link = Link(url=url, submitted_url=submitted_url or url)
            session.add(link)
            session.flush()
            archive = self._new_archive(session, link.id, url)
            link.content_archive = archive
            session.commit()
            archive_id, state = archive.id, archive.state

        logger.info("archive_service: saved link %s (archive %s)", link.id, archive_id)
        self._dispatch(archive_id, state)
        return link

    def create_archive(self, link_id: uuid.UUID, url: str) -> uuid.UUID:
        """Create a ``pending`` archive for an existing link and queue it.

        Returns:
            The new archive's ID.

        Raises:
            ArchiveNotFoundError: If the link does not exist.
            ArchiveAlreadyExistsError: If the link already has an archive.
        """
        with self._session_factory() as session:
            if session.get(Link, link_id) is None:
                raise ArchiveNotFoundError(f"Link {link_id} not found")
            existing = session.scalar(
                select(ContentArchive.id).where(ContentArchive.link_id == link_id)
            )
            if existing is not None:
                raise ArchiveAlreadyExistsError(f"Link {link_id} already has archive {existing}")

            archive = self._new_archive(session, link_id, url)
            session.commit()
            archive_id, state = archive.id, archive.state

        logger.info("archive_service: created archive %s for link %s", archive_id, link_id)
        self._dispatch(archive_id, state)
        return archive_id

    def retry_archive(self, link_id: uuid.UUID) -> ContentArchive:
        """Queue a new attempt for a ``failed`` archive.

        The worker records the ``failed → processing`` retry transition when
        it picks the job up.

        Raises:
            ArchiveNotFoundError: If the link has no archive.
            InvalidTransitionError: If the archive is not ``failed``.
        """
        archive = self.get_archive(link_id)
        if archive.state != ArchiveState.FAILED.value:
            raise InvalidTransitionError(archive.state, ArchiveState.PROCESSING.value)
        if not self._settings.enabled:
            logger.info("archive_service: archival disabled; not retrying %s", archive.id)
            return archive

        logger.info("archive_service: retrying archive %s", archive.id)
        self._enqueue(archive.id)
        return archive

    def delete_link(self, link_id: uuid.UUID) -> None:
        """Delete a link together with its archive and transition history.

        Raises:
            ArchiveNotFoundError: If the link does not exist.
        """
        with self._session_factory() as session:
            link = session.get(Link, link_id)
            if link is None:
                raise ArchiveNotFoundError(f"Link {link_id} not found")
            session.delete(link)
            session.commit()
        logger.info("archive_service: deleted link %s", link_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_archive(self, link_id: uuid.UUID) -> ContentArchive:
        """Return the archive belonging to ``link_id``.

        Raises:
            ArchiveNotFoundError: If the link has no archive.
        """
        with self._session_factory() as session:
            archive = session.scalar(
                select(ContentArchive).where(ContentArchive.link_id == link_id)
            )
            if archive is None:
                raise ArchiveNotFoundError(f"No archive for link {link_id}")
            return archive

    def get_transitions(self, archive_id: uuid.UUID) -> list[ContentArchiveTransition]:
        """Return the archive's transition log, oldest first."""
        with self._session_factory() as session:
            if session.get(ContentArchive, archive_id) is None:
                raise ArchiveNotFoundError(f"Archive {archive_id} not found")
            return list(
                session.scalars(
                    select(ContentArchiveTransition)
                    .where(ContentArchiveTransition.archive_id == archive_id)
                    .order_by(ContentArchiveTransition.sort_key)
                )
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_archive(self, session, link_id: uuid.UUID, url: str) -> ContentArchive:
        archive = ContentArchive(link_id=link_id, url=url)
        transition_to(session, archive, ArchiveState.PENDING)
        if not self._settings.enabled:
            transition_to(
                session,
                archive,
                ArchiveState.FAILED,
                metadata={
                    "error_reason": ErrorReason.DISABLED.value,
                    "error_message": _DISABLED_MESSAGE,
                },
                updates={"error_message": _DISABLED_MESSAGE},
            )
        return archive

    def _dispatch(self, archive_id: uuid.UUID, state: str) -> None:
        if state != ArchiveState.PENDING.value:
            return
        try:
            self._enqueue(archive_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("archive_service: failed to enqueue archive %s: %s", archive_id, exc)
