"""Async HTTP fetcher with SSRF-safe redirects and a streaming size cap.

Uses ``httpx`` for all HTTP requests.  Safety properties:

- **Every connection is validated.**  :class:`GuardedTransport` runs the
  :class:`~link_archiver.archiving.url_validator.UrlValidator` against the
  target of every request the client sends, so neither the initial URL nor
  any redirect target can reach a private address.
- **Redirects are followed manually** (``follow_redirects=False``) and capped
  at ``max_redirects`` hops.
- **Size is enforced twice**: a ``HEAD`` probe rejects a declared
  ``Content-Length`` above the limit before any body is downloaded, and the
  ``GET`` body is streamed and aborted as soon as it crosses the limit.

Failures are raised as :class:`~link_archiver.core.exceptions.FetchError`
(or :class:`~link_archiver.core.exceptions.UrlValidationError` when a hop
fails validation), never returned as partial results.
"""

from __future__ import annotations

import logging
import urllib.parse
from dataclasses import dataclass, field

import httpx
from bs4 import UnicodeDammit

from link_archiver.archiving.config import HTML_CONTENT_TYPES, REDIRECT_STATUSES
from link_archiver.archiving.url_validator import UrlValidator, ValidatedURL
from link_archiver.config.settings import ArchiveSettings
from link_archiver.core.exceptions import ErrorReason, FetchError, UrlValidationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class FetchedPage:
    """A successfully fetched HTML response.

    Attributes:
        body: Raw response body, at most ``max_content_size`` bytes.
        status_code: HTTP status of the final response.
        final_url: URL of the final response after redirects.
        content_type: Media type without parameters, or ``None`` if the
            server sent no ``Content-Type``.
        encoding: Charset declared in the ``Content-Type`` header, if any.
        redirect_count: Number of redirect hops followed.
        resolved_ips: Addresses the final URL's host resolved to.
    """

    body: bytes
    status_code: int
    final_url: str
    content_type: str | None
    encoding: str | None = None
    redirect_count: int = 0
    resolved_ips: list[str] = field(default_factory=list)

    @property
    def byte_count(self) -> int:
        return len(self.body)

    @property
    def text(self) -> str:
        """Decode the body using the declared charset, falling back to sniffing.

        Sniffing honours a byte-order mark or ``<meta charset>`` declaration
        before guessing.
        """
        known = [self.encoding] if self.encoding else []
        dammit = UnicodeDammit(self.body, known_definite_encodings=known, is_html=True)
        if dammit.unicode_markup is not None:
            return dammit.unicode_markup
        return self.body.decode(self.encoding or "utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Validating transport
# ---------------------------------------------------------------------------


class GuardedTransport(httpx.AsyncBaseTransport):
    """Transport wrapper that validates each request's URL before sending it.

    Args:
        validator: Validator applied to every outgoing request URL.
        transport: Transport that performs the actual I/O.
    """

    def __init__(self, validator: UrlValidator, transport: httpx.AsyncBaseTransport) -> None:
        self._validator = validator
        self._transport = transport
        self.last_validated: ValidatedURL | None = None

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.last_validated = await self._validator.validate(str(request.url))
        return await self._transport.handle_async_request(request)

    async def aclose(self) -> None:
        await self._transport.aclose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _media_type(content_type: str | None) -> str | None:
    """Return the lower-cased media type of a Content-Type header value."""
    if not content_type:
        return None
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type or None


def _declared_length(response: httpx.Response) -> int | None:
    raw = response.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------


class HttpFetcher:
    """Downloads HTML pages under the archival pipeline's safety limits.

    Args:
        settings: Timeouts, size and redirect limits, User-Agent.
        validator: URL validator applied to every hop.
        transport: Underlying transport.  Defaults to a fresh
            :class:`httpx.AsyncHTTPTransport` per fetch; tests pass an
            :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        settings: ArchiveSettings,
        validator: UrlValidator,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._validator = validator
        self._transport = transport

    async def fetch(self, url: str) -> FetchedPage:
        """Fetch ``url`` and return the HTML response body.

        Args:
            url: A URL that has already passed validation.

        Returns:
            A :class:`FetchedPage` for the final (non-redirect) response.

        Raises:
            FetchError: With reason ``size_limit_exceeded``,
                ``too_many_redirects``, ``http_error``,
                ``unsupported_content_type``, ``timeout`` or
                ``connection_failed``.
            UrlValidationError: If a redirect target fails validation.
        """
        guard = GuardedTransport(self._validator, self._transport or httpx.AsyncHTTPTransport())
        timeout = httpx.Timeout(self._settings.read_timeout, connect=self._settings.connect_timeout)
        async with httpx.AsyncClient(
            transport=guard,
            timeout=timeout,
            follow_redirects=False,
            headers={"User-Agent": self._settings.user_agent},
        ) as client:
            try:
                await self._check_declared_size(client, url)
                return await self._get(client, guard, url)
            except httpx.TimeoutException as exc:
                logger.warning("fetcher: timeout fetching %s", url)
                raise FetchError(
                    ErrorReason.TIMEOUT,
                    f"Request timed out: {type(exc).__name__}",
                    details={"url": url},
                ) from exc
            except httpx.RequestError as exc:
                logger.warning("fetcher: request error for %s: %s", url, exc)
                raise FetchError(
                    ErrorReason.CONNECTION_FAILED,
                    f"Connection failed: {exc or type(exc).__name__}",
                    details={"url": url},
                ) from exc

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _check_declared_size(self, client: httpx.AsyncClient, url: str) -> None:
        """Reject the URL up front if a HEAD request declares an oversized body.

        Servers that reject or mishandle HEAD are ignored here; the streaming
        cap in :meth:`_get` still applies.
        """
        try:
            response = await client.head(url)
        except httpx.HTTPError as exc:
            logger.debug("fetcher: HEAD %s failed (%s); relying on streaming cap", url, exc)
            return

        declared = _declared_length(response)
        if declared is not None and declared > self._settings.max_content_size:
            raise self._size_error(url, declared, source="head")

    async def _get(
        self, client: httpx.AsyncClient, guard: GuardedTransport, url: str
    ) -> FetchedPage:
        max_redirects = self._settings.max_redirects
        current_url = url

        for hop in range(max_redirects + 1):
            try:
                request = client.build_request("GET", current_url)
            except httpx.InvalidURL as exc:
                raise UrlValidationError(
                    ErrorReason.INVALID_FORMAT,
                    f"Malformed redirect target: {exc}",
                    details={"url": current_url},
                ) from exc

            response = await client.send(request, stream=True)
            try:
                if response.status_code in REDIRECT_STATUSES:
                    current_url = self._redirect_target(response, current_url, hop)
                    continue
                return await self._read_page(response, guard, current_url, hop)
            finally:
                await response.aclose()

        # Unreachable: the final hop either returns or raises.
        raise AssertionError("redirect loop exited without a result")

    def _redirect_target(self, response: httpx.Response, current_url: str, hop: int) -> str:
        location = response.headers.get("location")
        if not location:
            raise FetchError(
                ErrorReason.HTTP_ERROR,
                f"HTTP {response.status_code} redirect without a Location header",
                details={"url": current_url},
                http_status=response.status_code,
            )

        if hop >= self._settings.max_redirects:
            logger.info("fetcher: too many redirects starting at hop %s (%s)", hop, current_url)
            raise FetchError(
                ErrorReason.TOO_MANY_REDIRECTS,
                f"Exceeded {self._settings.max_redirects} redirects",
                details={
                    "redirect_count": hop + 1,
                    "max_redirects": self._settings.max_redirects,
                    "last_url": current_url,
                },
                http_status=response.status_code,
            )

        target = urllib.parse.urljoin(current_url, location)
        logger.debug("fetcher: %s redirected to %s", current_url, target)
        return target

    async def _read_page(
        self,
        response: httpx.Response,
        guard: GuardedTransport,
        url: str,
        redirect_count: int,
    ) -> FetchedPage:
        status = response.status_code
        if not 200 <= status < 300:
            logger.info("fetcher: HTTP %d for %s", status, url)
            raise FetchError(
                ErrorReason.HTTP_ERROR,
                f"HTTP {status}",
                details={"url": url},
                http_status=status,
            )

        media_type = _media_type(response.headers.get("content-type"))
        if media_type is not None and media_type not in HTML_CONTENT_TYPES:
            raise FetchError(
                ErrorReason.UNSUPPORTED_CONTENT_TYPE,
                f"Unsupported content type: {media_type}",
                details={"url": url, "content_type": media_type},
                http_status=status,
            )

        limit = self._settings.max_content_size
        declared = _declared_length(response)
        if declared is not None and declared > limit:
            raise self._size_error(url, declared, source="get", http_status=status)

        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > limit:
                raise self._size_error(url, received, source="stream", http_status=status)
            chunks.append(chunk)

        validated = guard.last_validated
        return FetchedPage(
            body=b"".join(chunks),
            status_code=status,
            final_url=str(response.url),
            content_type=media_type,
            encoding=response.charset_encoding,
            redirect_count=redirect_count,
            resolved_ips=list(validated.addresses) if validated else [],
        )

    def _size_error(
        self,
        url: str,
        size: int,
        *,
        source: str,
        http_status: int | None = None,
    ) -> FetchError:
        logger.info(
            "fetcher: %s exceeds size limit (%d > %d bytes, %s)",
            url,
            size,
            self._settings.max_content_size,
            source,
        )
        return FetchError(
            ErrorReason.SIZE_LIMIT_EXCEEDED,
            f"Content exceeds {self._settings.max_content_size} bytes",
            details={
                "url": url,
                "byte_count": size,
                "max_content_size": self._settings.max_content_size,
                "source": source,
            },
            http_status=http_status,
        )
