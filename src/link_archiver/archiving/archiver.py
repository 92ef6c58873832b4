"""Archive orchestrator: runs one archive through the pipeline.

Stages run sequentially, each consuming the previous stage's output::

    validation ──▶ fetch ──▶ extraction ──▶ sanitization ──▶ completed

Any stage failure is translated into a ``processing → failed`` transition
carrying the stage name, reason code and stage facts; the orchestrator never
lets a pipeline failure escape as an exception.  The two exceptions are
cancellation (recorded as ``cancelled`` and then re-raised so the worker can
stop) and a vanished archive row (the owning link was deleted mid-run), which
abandons the run quietly.

Database sessions are short-lived and never held open across network I/O.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any

import structlog
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from link_archiver.archiving.content_extractor import ContentExtractor, html_to_text
from link_archiver.archiving.http_fetcher import HttpFetcher
from link_archiver.archiving.sanitizer import HtmlSanitizer
from link_archiver.archiving.state_machine import ArchiveState, transition_to
from link_archiver.archiving.url_validator import UrlValidator
from link_archiver.config.settings import ArchiveSettings
from link_archiver.core.database import get_sync_session
from link_archiver.core.exceptions import ArchivalError, ErrorReason
from link_archiver.core.models.archives import ContentArchive, ContentArchiveTransition
from link_archiver.core.models.base import utcnow

logger = structlog.get_logger(__name__)

SessionFactory = Callable[[], AbstractContextManager[Session]]


class Stage:
    VALIDATION = "validation"
    FETCH = "fetch"
    EXTRACTION = "extraction"
    SANITIZATION = "sanitization"


@dataclass
class ArchiveOutcome:
    """Summary of one :meth:`Archiver.run` call.

    Attributes:
        archive_id: The archive that was processed.
        state: Archive state after the run, or ``None`` if the archive no
            longer exists.
        reason: Failure reason code when ``state == "failed"``.
        stage: Pipeline stage that failed, if any.
        retryable: ``True`` if the failure is transient and worth retrying.
        skipped: ``True`` if the archive was not in a runnable state.
        retry_count: Retry number of this attempt as recorded in the
            transition log (``0`` for the first attempt).
    """

    archive_id: str
    state: str | None
    reason: str | None = None
    stage: str | None = None
    retryable: bool = False
    skipped: bool = False
    retry_count: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "archive_id": self.archive_id,
            "state": self.state,
            "reason": self.reason,
            "stage": self.stage,
            "retryable": self.retryable,
            "skipped": self.skipped,
            "retry_count": self.retry_count,
        }


class _ArchiveGone(Exception):
    """Raised internally when the archive row disappears mid-run."""


def _duration_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class Archiver:
    """Drives a ``ContentArchive`` from ``pending`` to ``completed`` or ``failed``.

    Args:
        settings: Pipeline configuration.
        validator: URL validator.  Built from ``settings`` if omitted.
        fetcher: HTTP fetcher.  Built from ``settings`` and ``validator`` if
            omitted.
        extractor: Content extractor.
        sanitizer: HTML sanitizer.
        session_factory: Context-manager factory yielding SQLAlchemy sessions.
    """

    def __init__(
        self,
        settings: ArchiveSettings,
        *,
        validator: UrlValidator | None = None,
        fetcher: HttpFetcher | None = None,
        extractor: ContentExtractor | None = None,
        sanitizer: HtmlSanitizer | None = None,
        session_factory: SessionFactory = get_sync_session,
    ) -> None:
        self._settings = settings
        self._validator = validator or UrlValidator(timeout=settings.connect_timeout)
        self._fetcher = fetcher or HttpFetcher(settings, self._validator)
        self._extractor = extractor or ContentExtractor()
        self._sanitizer = sanitizer or HtmlSanitizer()
        self._session_factory = session_factory

    async def run(self, archive_id: uuid.UUID | str, *, retry_count: int = 0) -> ArchiveOutcome:
        """Process one archive.

        Args:
            archive_id: Primary key of the ``ContentArchive``.
            retry_count: Number of earlier attempts; ``0`` for the first run.
                When the archive is ``failed`` the count is taken from its
                transition log instead, so manual and automatic retries
                share one sequence.

        Returns:
            An :class:`ArchiveOutcome` describing the final state.

        Raises:
            asyncio.CancelledError: Re-raised after the archive is marked
                ``failed`` with reason ``cancelled``.
            SoftTimeLimitExceeded: Same, for Celery's soft time limit.
        """
        archive_uuid = uuid.UUID(str(archive_id))
        log = logger.bind(archive_id=str(archive_uuid))
        started = time.monotonic()

        url, retry_count, outcome = self._begin(archive_uuid, retry_count, log)
        if outcome is not None:
            return outcome
        log = log.bind(retry_count=retry_count)

        stage = Stage.VALIDATION
        try:
            validated = await self._validator.validate(url)
            log.debug("archiver: url validated", addresses=list(validated.addresses))
            self._ensure_exists(archive_uuid)

            stage = Stage.FETCH
            page = await self._fetcher.fetch(url)
            log.debug(
                "archiver: page fetched",
                final_url=page.final_url,
                byte_count=page.byte_count,
                redirect_count=page.redirect_count,
            )
            self._ensure_exists(archive_uuid)

            stage = Stage.EXTRACTION
            extracted = self._extractor.extract(page.text, page.final_url)
            self._ensure_exists(archive_uuid)

            stage = Stage.SANITIZATION
            content_html = self._sanitizer.sanitize(extracted.content_html)
        except _ArchiveGone:
            log.info("archiver: archive deleted mid-run; abandoning", stage=stage)
            return ArchiveOutcome(archive_id=str(archive_uuid), state=None, stage=stage)
        except ArchivalError as exc:
            return self._fail(archive_uuid, stage, exc, retry_count, started, log)
        except (asyncio.CancelledError, SoftTimeLimitExceeded) as exc:
            self._fail(
                archive_uuid,
                stage,
                ArchivalError(ErrorReason.CANCELLED, f"Archival cancelled ({type(exc).__name__})"),
                retry_count,
                started,
                log,
            )
            raise
        except Exception as exc:  # noqa: BLE001
            log.exception("archiver: unexpected error", stage=stage)
            return self._fail(
                archive_uuid,
                stage,
                ArchivalError(
                    ErrorReason.UNEXPECTED_ERROR,
                    f"{type(exc).__name__}: {exc}",
                    details={"exception_type": type(exc).__name__},
                ),
                retry_count,
                started,
                log,
            )

        return self._complete(
            archive_uuid,
            updates={
                "content_html": content_html,
                "content_text": html_to_text(content_html),
                "title": extracted.title,
                "description": extracted.description,
                "image_url": extracted.image_url,
                "archive_metadata": extracted.metadata,
                "fetched_at": utcnow(),
            },
            metadata={
                "duration_ms": _duration_ms(started),
                "byte_count": page.byte_count,
                "http_status": page.status_code,
                "final_url": page.final_url,
                "resolved_ips": page.resolved_ips or list(validated.addresses),
                "redirect_count": page.redirect_count,
                "retry_count": retry_count,
            },
            log=log,
        )

    # ------------------------------------------------------------------
    # Lifecycle steps
    # ------------------------------------------------------------------

    def _begin(
        self, archive_id: uuid.UUID, retry_count: int, log: Any
    ) -> tuple[str, int, ArchiveOutcome | None]:
        """Move the archive into ``processing``.

        Returns the URL to archive and the retry number of this attempt, or
        an outcome when the run must stop early (archive missing, archival
        disabled, not runnable, or claimed by a concurrent job).
        """
        try:
            with self._session_factory() as session:
                # Serialize concurrent jobs for the same archive (no-op on SQLite).
                archive = session.get(ContentArchive, archive_id, with_for_update=True)
                if archive is None:
                    log.warning("archiver: archive not found")
                    return "", retry_count, ArchiveOutcome(archive_id=str(archive_id), state=None)

                state = ArchiveState(archive.state)

                if not self._settings.enabled:
                    if state is ArchiveState.PENDING:
                        message = "Content archival is disabled"
                        transition_to(
                            session,
                            archive,
                            ArchiveState.FAILED,
                            metadata={
                                "error_reason": ErrorReason.DISABLED.value,
                                "error_message": message,
                            },
                            updates={"error_message": message},
                        )
                        session.commit()
                        log.info("archiver: archival disabled; archive failed")
                        return "", retry_count, ArchiveOutcome(
                            archive_id=str(archive_id),
                            state=ArchiveState.FAILED.value,
                            reason=ErrorReason.DISABLED.value,
                        )
                    return "", retry_count, ArchiveOutcome(
                        archive_id=str(archive_id), state=state.value, skipped=True
                    )

                if state is ArchiveState.PENDING:
                    metadata: dict[str, Any] = {"retry_count": retry_count}
                elif state is ArchiveState.FAILED:
                    retry_count = self._previous_retries(session, archive_id) + 1
                    metadata = {"event": "retry", "retry_count": retry_count}
                else:
                    log.info("archiver: archive not runnable; skipping", state=state.value)
                    return "", retry_count, ArchiveOutcome(
                        archive_id=str(archive_id), state=state.value, skipped=True
                    )

                transition_to(session, archive, ArchiveState.PROCESSING, metadata=metadata)
                session.commit()
                log.info("archiver: processing started", url=archive.url, retry_count=retry_count)
                return archive.url, retry_count, None
        except IntegrityError:
            # Another job recorded a transition for this archive first.
            state_now = self._current_state(archive_id)
            log.info("archiver: archive claimed by another job; skipping", state=state_now)
            return "", retry_count, ArchiveOutcome(
                archive_id=str(archive_id), state=state_now, skipped=True
            )

    @staticmethod
    def _previous_retries(session: Session, archive_id: uuid.UUID) -> int:
        """Count the ``failed → processing`` entries already in the log."""
        return session.scalar(
            select(func.count())
            .select_from(ContentArchiveTransition)
            .where(
                ContentArchiveTransition.archive_id == archive_id,
                ContentArchiveTransition.from_state == ArchiveState.FAILED.value,
                ContentArchiveTransition.to_state == ArchiveState.PROCESSING.value,
            )
        ) or 0

    def _current_state(self, archive_id: uuid.UUID) -> str | None:
        with self._session_factory() as session:
            return session.scalar(select(ContentArchive.state).where(ContentArchive.id == archive_id))

    def _ensure_exists(self, archive_id: uuid.UUID) -> None:
        with self._session_factory() as session:
            if session.get(ContentArchive, archive_id) is None:
                raise _ArchiveGone(str(archive_id))

    def _complete(
        self,
        archive_id: uuid.UUID,
        *,
        updates: dict[str, Any],
        metadata: dict[str, Any],
        log: Any,
    ) -> ArchiveOutcome:
        with self._session_factory() as session:
            archive = session.get(ContentArchive, archive_id)
            if archive is None:
                log.info("archiver: archive deleted before completion; discarding content")
                return ArchiveOutcome(archive_id=str(archive_id), state=None)

            transition_to(session, archive, ArchiveState.COMPLETED, metadata=metadata, updates=updates)
            session.commit()

        log.info(
            "archiver: archive completed",
            duration_ms=metadata["duration_ms"],
            byte_count=metadata["byte_count"],
        )
        return ArchiveOutcome(
            archive_id=str(archive_id),
            state=ArchiveState.COMPLETED.value,
            retry_count=metadata["retry_count"],
        )

    def _fail(
        self,
        archive_id: uuid.UUID,
        stage: str,
        error: ArchivalError,
        retry_count: int,
        started: float,
        log: Any,
    ) -> ArchiveOutcome:
        """Record ``processing → failed`` with the stage facts of ``error``."""
        metadata: dict[str, Any] = {
            "stage": stage,
            "error_reason": error.reason.value,
            "error_message": error.message,
            "retry_count": retry_count,
            "retryable": error.retryable,
            "duration_ms": _duration_ms(started),
        }
        if error.http_status is not None:
            metadata["http_status"] = error.http_status
        for key, value in error.details.items():
            metadata.setdefault(key, value)

        log.warning(
            "archiver: archive failed",
            stage=stage,
            error_reason=error.reason.value,
            error_message=error.message,
        )

        with self._session_factory() as session:
            archive = session.get(ContentArchive, archive_id)
            if archive is None:
                return ArchiveOutcome(archive_id=str(archive_id), state=None, stage=stage)
            if archive.state != ArchiveState.PROCESSING.value:
                log.warning("archiver: cannot record failure", state=archive.state)
                return ArchiveOutcome(archive_id=str(archive_id), state=archive.state, stage=stage)

            transition_to(
                session,
                archive,
                ArchiveState.FAILED,
                metadata=metadata,
                updates={"error_message": error.message},
            )
            session.commit()

        return ArchiveOutcome(
            archive_id=str(archive_id),
            state=ArchiveState.FAILED.value,
            reason=error.reason.value,
            stage=stage,
            retryable=error.retryable,
            retry_count=retry_count,
        )
