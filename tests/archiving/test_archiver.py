"""End-to-end tests for the archive orchestrator.

Each test saves a link through :class:`ArchiveService` (with a recording
enqueue instead of Celery), runs :class:`Archiver` against respx-mocked HTTP
and the fake resolver, and inspects the persisted archive and its transition
log.
"""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
import respx
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy.exc import IntegrityError

from link_archiver.archiving.archiver import Archiver
from link_archiver.archiving.http_fetcher import FetchedPage
from link_archiver.archiving.service import ArchiveService
from link_archiver.config.settings import ArchiveSettings
from link_archiver.core.exceptions import ErrorReason, FetchError
from link_archiver.core.models import ContentArchive, ContentArchiveTransition

_ARTICLE_HTML = """<!DOCTYPE html>
<html>
<head>
<title>Transit plan approved</title>
<meta property="og:title" content="Council approves transit plan">
<meta property="og:description" content="The vote passed 7-2.">
<meta property="og:image" content="/img/lead.jpg">
</head>
<body>
<div class="sidebar"><a href="/subscribe">Subscribe</a></div>
<article>
<h1>Council approves transit plan</h1>
<p>The city council voted on Tuesday to approve the long-debated transit plan,
which adds three new bus lines and extends light rail service to the airport.</p>
<p>Supporters said the plan would cut commute times for thousands of residents
and reduce congestion downtown during peak hours.</p>
<p onclick="track()">Opponents questioned the cost, which is estimated at
several hundred million over the next decade.</p>
<p>Construction on the first bus line is expected to begin next spring, with
the light rail extension following two years later.</p>
<script>window.evil = true;</script>
</article>
</body>
</html>"""


@pytest.fixture
def enqueued() -> list[uuid.UUID]:
    return []


@pytest.fixture
def service(archive_settings: ArchiveSettings, session_factory, enqueued) -> ArchiveService:
    return ArchiveService(archive_settings, session_factory=session_factory, enqueue=enqueued.append)


@pytest.fixture
def archiver(archive_settings: ArchiveSettings, validator, session_factory) -> Archiver:
    return Archiver(archive_settings, validator=validator, session_factory=session_factory)


def _save(service: ArchiveService, url: str) -> tuple[uuid.UUID, uuid.UUID]:
    link = service.save_link(url)
    return link.id, link.content_archive.id


def _last(service: ArchiveService, archive_id: uuid.UUID) -> ContentArchiveTransition:
    return service.get_transitions(archive_id)[-1]


def _page() -> FetchedPage:
    return FetchedPage(
        body=_ARTICLE_HTML.encode(),
        status_code=200,
        final_url="https://example.com/article",
        content_type="text/html",
        encoding="utf-8",
    )


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestEndToEnd:
    async def test_public_article_is_completed(
        self, service: ArchiveService, archiver: Archiver, enqueued: list[uuid.UUID]
    ) -> None:
        link_id, archive_id = _save(service, "https://example.com/article")
        assert enqueued == [archive_id]

        with respx.mock(base_url="https://example.com") as mock:
            mock.head("/article").mock(return_value=httpx.Response(200))
            mock.get("/article").mock(return_value=httpx.Response(200, html=_ARTICLE_HTML))

            outcome = await archiver.run(archive_id)

        assert outcome.state == "completed"
        archive = service.get_archive(link_id)
        assert archive.state == "completed"
        assert archive.title == "Council approves transit plan"
        assert archive.description == "The vote passed 7-2."
        assert archive.image_url == "https://example.com/img/lead.jpg"
        assert "light rail" in archive.content_text
        assert "<script" not in archive.content_html
        assert "onclick" not in archive.content_html
        assert "window.evil" not in archive.content_text
        assert archive.archive_metadata["og"]["title"] == "Council approves transit plan"
        assert archive.archive_metadata["final_url"] == "https://example.com/article"
        assert archive.fetched_at is not None
        assert archive.error_message is None

        log = service.get_transitions(archive_id)
        assert [(t.from_state, t.to_state) for t in log] == [
            (None, "pending"),
            ("pending", "processing"),
            ("processing", "completed"),
        ]
        completed = log[-1].transition_metadata
        assert completed["http_status"] == 200
        assert completed["byte_count"] == len(_ARTICLE_HTML.encode())
        assert completed["resolved_ips"] == ["93.184.216.34"]
        assert completed["redirect_count"] == 0
        assert completed["duration_ms"] >= 0

    async def test_private_ip_is_blocked(self, service: ArchiveService, archiver: Archiver) -> None:
        link_id, archive_id = _save(service, "http://192.168.1.50/internal")

        with respx.mock(assert_all_called=False) as mock:
            internal = mock.route(host="192.168.1.50").mock(return_value=httpx.Response(200))
            outcome = await archiver.run(archive_id)

        assert not internal.called
        assert outcome.state == "failed"
        assert outcome.reason == "private_ip_blocked"
        assert outcome.stage == "validation"

        archive = service.get_archive(link_id)
        assert archive.state == "failed"
        assert archive.content_html is None
        assert archive.content_text is None
        assert archive.title is None
        assert archive.error_message

        failure = _last(service, archive_id).transition_metadata
        assert failure["stage"] == "validation"
        assert failure["error_reason"] == "private_ip_blocked"
        assert failure["resolved_ip"] == "192.168.1.50"
        assert failure["retry_count"] == 0
        assert "duration_ms" in failure

    async def test_oversized_page_is_rejected_without_reading_body(
        self, service: ArchiveService, archiver: Archiver
    ) -> None:
        link_id, archive_id = _save(service, "https://example.com/huge")

        with respx.mock(base_url="https://example.com", assert_all_called=False) as mock:
            mock.head("/huge").mock(
                return_value=httpx.Response(200, headers={"content-length": str(15 * 1024 * 1024)})
            )
            get_route = mock.get("/huge").mock(return_value=httpx.Response(200, html=_ARTICLE_HTML))

            outcome = await archiver.run(archive_id)

        assert not get_route.called
        assert outcome.reason == "size_limit_exceeded"
        failure = _last(service, archive_id).transition_metadata
        assert failure["stage"] == "fetch"
        assert failure["error_reason"] == "size_limit_exceeded"
        assert failure["byte_count"] == 15 * 1024 * 1024
        assert service.get_archive(link_id).content_html is None

    async def test_http_404_records_status(self, service: ArchiveService, archiver: Archiver) -> None:
        _, archive_id = _save(service, "https://example.com/gone")

        with respx.mock(base_url="https://example.com") as mock:
            mock.head("/gone").mock(return_value=httpx.Response(404))
            mock.get("/gone").mock(return_value=httpx.Response(404, html="<p>Not found</p>"))

            outcome = await archiver.run(archive_id)

        assert outcome.state == "failed"
        assert outcome.reason == "http_error"
        assert outcome.retryable is False
        failure = _last(service, archive_id).transition_metadata
        assert failure["http_status"] == 404
        assert failure["stage"] == "fetch"

    async def test_deleting_owner_removes_completed_archive(
        self, service: ArchiveService, archiver: Archiver, session_factory
    ) -> None:
        link_id, archive_id = _save(service, "https://example.com/article")
        with respx.mock(base_url="https://example.com") as mock:
            mock.head("/article").mock(return_value=httpx.Response(200))
            mock.get("/article").mock(return_value=httpx.Response(200, html=_ARTICLE_HTML))
            await archiver.run(archive_id)
        assert service.get_archive(link_id).state == "completed"

        service.delete_link(link_id)

        with session_factory() as session:
            assert session.get(ContentArchive, archive_id) is None
            assert session.query(ContentArchiveTransition).filter_by(archive_id=archive_id).count() == 0


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestFailureHandling:
    async def test_timeout_is_retryable(self, service: ArchiveService, archiver: Archiver) -> None:
        _, archive_id = _save(service, "https://example.com/slow")

        with respx.mock(base_url="https://example.com") as mock:
            mock.head("/slow").mock(return_value=httpx.Response(200))
            mock.get("/slow").mock(side_effect=httpx.ReadTimeout("read timed out"))

            outcome = await archiver.run(archive_id)

        assert outcome.reason == "timeout"
        assert outcome.retryable is True
        assert _last(service, archive_id).transition_metadata["retryable"] is True

    async def test_retry_enters_processing_from_failed(
        self, service: ArchiveService, archiver: Archiver
    ) -> None:
        link_id, archive_id = _save(service, "https://example.com/flaky")

        with respx.mock(base_url="https://example.com") as mock:
            mock.head("/flaky").mock(return_value=httpx.Response(200))
            mock.get("/flaky").mock(
                side_effect=[
                    httpx.ConnectError("connection reset"),
                    httpx.Response(200, html=_ARTICLE_HTML),
                ]
            )

            first = await archiver.run(archive_id)
            second = await archiver.run(archive_id, retry_count=1)

        assert first.reason == "connection_failed"
        assert second.state == "completed"

        log = service.get_transitions(archive_id)
        assert [(t.from_state, t.to_state) for t in log] == [
            (None, "pending"),
            ("pending", "processing"),
            ("processing", "failed"),
            ("failed", "processing"),
            ("processing", "completed"),
        ]
        assert log[3].transition_metadata == {"event": "retry", "retry_count": 1}
        assert service.get_archive(link_id).error_message is None

    async def test_extraction_failure(self, service: ArchiveService, archiver: Archiver) -> None:
        _, archive_id = _save(service, "https://example.com/empty")

        with respx.mock(base_url="https://example.com") as mock:
            mock.head("/empty").mock(return_value=httpx.Response(200))
            mock.get("/empty").mock(
                return_value=httpx.Response(200, html="<html><head></head><body></body></html>")
            )

            outcome = await archiver.run(archive_id)

        assert outcome.reason == "main_content_extraction_failed"
        failure = _last(service, archive_id).transition_metadata
        assert failure["stage"] == "extraction"
        assert failure["failed_passes"] == ["main_content"]

    async def test_unexpected_error_is_recorded(
        self, service: ArchiveService, archive_settings: ArchiveSettings, validator, session_factory
    ) -> None:
        _, archive_id = _save(service, "https://example.com/article")
        fetcher = MagicMock()
        fetcher.fetch = AsyncMock(return_value=_page())
        extractor = MagicMock()
        extractor.extract.side_effect = RuntimeError("parser exploded")
        archiver = Archiver(
            archive_settings,
            validator=validator,
            fetcher=fetcher,
            extractor=extractor,
            session_factory=session_factory,
        )

        outcome = await archiver.run(archive_id)

        assert outcome.reason == "unexpected_error"
        assert outcome.stage == "extraction"
        failure = _last(service, archive_id).transition_metadata
        assert failure["exception_type"] == "RuntimeError"
        assert "parser exploded" in failure["error_message"]

    @pytest.mark.parametrize("exc_type", [asyncio.CancelledError, SoftTimeLimitExceeded])
    async def test_cancellation_is_recorded_and_reraised(
        self,
        service: ArchiveService,
        archive_settings: ArchiveSettings,
        validator,
        session_factory,
        exc_type: type[BaseException],
    ) -> None:
        link_id, archive_id = _save(service, "https://example.com/article")
        fetcher = MagicMock()
        fetcher.fetch = AsyncMock(side_effect=exc_type())
        archiver = Archiver(
            archive_settings, validator=validator, fetcher=fetcher, session_factory=session_factory
        )

        with pytest.raises(exc_type):
            await archiver.run(archive_id)

        assert service.get_archive(link_id).state == "failed"
        failure = _last(service, archive_id).transition_metadata
        assert failure["error_reason"] == "cancelled"
        assert failure["stage"] == "fetch"


# ---------------------------------------------------------------------------
# Lifecycle edges
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestLifecycle:
    async def test_missing_archive_returns_empty_outcome(self, archiver: Archiver) -> None:
        outcome = await archiver.run(uuid.uuid4())
        assert outcome.state is None

    async def test_completed_archive_is_skipped(
        self, service: ArchiveService, archive_settings: ArchiveSettings, validator, session_factory
    ) -> None:
        _, archive_id = _save(service, "https://example.com/article")
        fetcher = MagicMock()
        fetcher.fetch = AsyncMock(return_value=_page())
        archiver = Archiver(
            archive_settings, validator=validator, fetcher=fetcher, session_factory=session_factory
        )
        await archiver.run(archive_id)

        outcome = await archiver.run(archive_id)

        assert outcome.skipped is True
        assert outcome.state == "completed"
        assert fetcher.fetch.await_count == 1
        assert len(service.get_transitions(archive_id)) == 3

    async def test_disabled_archival_fails_pending_archive(
        self, archive_settings: ArchiveSettings, validator, session_factory
    ) -> None:
        enabled_service = ArchiveService(
            archive_settings, session_factory=session_factory, enqueue=lambda _id: None
        )
        link_id, archive_id = _save(enabled_service, "https://example.com/article")
        disabled = archive_settings.model_copy(update={"enabled": False})
        fetcher = MagicMock()
        fetcher.fetch = AsyncMock()
        archiver = Archiver(disabled, validator=validator, fetcher=fetcher, session_factory=session_factory)

        outcome = await archiver.run(archive_id)

        assert outcome.reason == "disabled"
        fetcher.fetch.assert_not_awaited()
        log = enabled_service.get_transitions(archive_id)
        assert (log[-1].from_state, log[-1].to_state) == ("pending", "failed")
        assert log[-1].transition_metadata["error_reason"] == ErrorReason.DISABLED.value
        assert enabled_service.get_archive(link_id).error_message == "Content archival is disabled"

    async def test_archive_deleted_mid_run_is_abandoned(
        self, service: ArchiveService, archive_settings: ArchiveSettings, validator, session_factory
    ) -> None:
        link_id, archive_id = _save(service, "https://example.com/article")

        async def _fetch_then_delete(url: str) -> FetchedPage:
            service.delete_link(link_id)
            return _page()

        fetcher = MagicMock()
        fetcher.fetch = AsyncMock(side_effect=_fetch_then_delete)
        extractor = MagicMock()
        archiver = Archiver(
            archive_settings,
            validator=validator,
            fetcher=fetcher,
            extractor=extractor,
            session_factory=session_factory,
        )

        outcome = await archiver.run(archive_id)

        assert outcome.state is None
        extractor.extract.assert_not_called()
        with session_factory() as session:
            assert session.get(ContentArchive, archive_id) is None

    async def test_manual_retry_continues_logged_retry_count(
        self,
        service: ArchiveService,
        archive_settings: ArchiveSettings,
        validator,
        session_factory,
        enqueued: list[uuid.UUID],
    ) -> None:
        link_id, archive_id = _save(service, "https://example.com/article")
        fetcher = MagicMock()
        fetcher.fetch = AsyncMock(
            side_effect=[FetchError(ErrorReason.CONNECTION_FAILED, "connection reset")] * 3 + [_page()]
        )
        archiver = Archiver(
            archive_settings, validator=validator, fetcher=fetcher, session_factory=session_factory
        )
        for attempt in range(3):
            await archiver.run(archive_id, retry_count=attempt)

        service.retry_archive(link_id)
        # The dispatched job carries no retry count of its own.
        outcome = await archiver.run(enqueued[-1])

        assert outcome.state == "completed"
        assert outcome.retry_count == 3
        retries = [
            t.transition_metadata
            for t in service.get_transitions(archive_id)
            if (t.from_state, t.to_state) == ("failed", "processing")
        ]
        assert retries == [
            {"event": "retry", "retry_count": 1},
            {"event": "retry", "retry_count": 2},
            {"event": "retry", "retry_count": 3},
        ]
        assert _last(service, archive_id).transition_metadata["retry_count"] == 3

    async def test_retry_count_argument_is_ignored_for_failed_archive(
        self, service: ArchiveService, archive_settings: ArchiveSettings, validator, session_factory
    ) -> None:
        _, archive_id = _save(service, "https://example.com/article")
        fetcher = MagicMock()
        fetcher.fetch = AsyncMock(
            side_effect=[FetchError(ErrorReason.TIMEOUT, "timed out"), _page()]
        )
        archiver = Archiver(
            archive_settings, validator=validator, fetcher=fetcher, session_factory=session_factory
        )
        await archiver.run(archive_id)

        outcome = await archiver.run(archive_id, retry_count=0)

        assert outcome.retry_count == 1
        log = service.get_transitions(archive_id)
        assert log[3].transition_metadata == {"event": "retry", "retry_count": 1}

    async def test_concurrent_claim_is_skipped(
        self, service: ArchiveService, archive_settings: ArchiveSettings, validator, session_factory
    ) -> None:
        link_id, archive_id = _save(service, "https://example.com/article")
        fetcher = MagicMock()
        fetcher.fetch = AsyncMock(return_value=_page())
        archiver = Archiver(
            archive_settings, validator=validator, fetcher=fetcher, session_factory=session_factory
        )
        conflict = IntegrityError(
            "INSERT INTO content_archive_transitions", {}, Exception("UNIQUE constraint failed")
        )

        with patch("link_archiver.archiving.archiver.transition_to", side_effect=conflict):
            outcome = await archiver.run(archive_id)

        assert outcome.skipped is True
        assert outcome.state == "pending"
        fetcher.fetch.assert_not_awaited()
        assert service.get_archive(link_id).state == "pending"
        assert len(service.get_transitions(archive_id)) == 1
