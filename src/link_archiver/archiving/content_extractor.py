"""Metadata and main-content extraction from fetched HTML.

Two independent passes run over the same document:

**Metadata pass** (``BeautifulSoup``)
    Reads OpenGraph and Twitter Card ``<meta>`` tags, the canonical link and
    the ``<title>`` element.  Title, description and image each use the first
    non-empty value in priority order (OpenGraph, then Twitter, then the
    plain HTML equivalent).

**Main-content pass** (``readability-lxml``, falling back to ``trafilatura``)
    Isolates the article body and drops navigation, sidebars and other
    boilerplate.  The plain-text rendition is derived from this HTML.

Both passes always run so that a failure report names every pass that
failed, not just the first one.
"""

from __future__ import annotations

import logging
import re
import urllib.parse
from dataclasses import dataclass, field
from typing import Any

from bs4 import BeautifulSoup

from link_archiver.archiving.config import MAX_IMAGE_URL_LENGTH, MAX_TITLE_LENGTH
from link_archiver.core.exceptions import ErrorReason, ExtractionError

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

#: Elements whose text content never belongs in the plain-text rendition.
_NON_TEXT_TAGS: tuple[str, ...] = ("script", "style", "noscript", "template")

# ---------------------------------------------------------------------------
# Output dataclasses
# ---------------------------------------------------------------------------


@dataclass
class PageMetadata:
    """Result of the metadata pass."""

    title: str | None = None
    description: str | None = None
    image_url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractedContent:
    """Everything extracted from one HTML document.

    Attributes:
        content_html: Main article HTML (not yet sanitized).
        content_text: Plain text derived from ``content_html``.
        title: Page title, truncated to 500 characters.
        description: Page description.
        image_url: Absolute preview image URL, or ``None`` if absent or
            longer than 2048 characters.
        metadata: Namespaced metadata bag (``og``, ``twitter``,
            ``canonical_url``, ``final_url``, ``content_type``).
    """

    content_html: str
    content_text: str
    title: str | None
    description: str | None
    image_url: str | None
    metadata: dict[str, Any]


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _clean(value: str | None) -> str | None:
    """Collapse whitespace; return ``None`` for empty values."""
    if value is None:
        return None
    cleaned = _WHITESPACE_RE.sub(" ", value).strip()
    return cleaned or None


def html_to_text(html: str) -> str:
    """Derive plain text from an HTML fragment.

    Script and style contents are dropped, entities are unescaped by the
    parser, whitespace runs collapse to single spaces and NUL bytes (which
    PostgreSQL rejects in text columns) are removed.
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(_NON_TEXT_TAGS):
        tag.decompose()
    text = soup.get_text(separator=" ")
    return _WHITESPACE_RE.sub(" ", text.replace("\x00", "")).strip()


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class ContentExtractor:
    """Extracts metadata and main content from an HTML document.

    Stateless: one instance can serve any number of documents, and the same
    input always yields the same output.
    """

    def extract(self, html: str, source_url: str) -> ExtractedContent:
        """Run both extraction passes over ``html``.

        Args:
            html: Decoded HTML document.
            source_url: Final URL the document was fetched from; used to
                resolve relative image URLs.

        Returns:
            An :class:`ExtractedContent` instance.

        Raises:
            ExtractionError: With reason ``metadata_extraction_failed`` or
                ``main_content_extraction_failed``.  ``details["failed_passes"]``
                lists every pass that failed.
        """
        failures: list[tuple[ErrorReason, str, str]] = []

        page_metadata: PageMetadata | None = None
        try:
            page_metadata = self.extract_metadata(html, source_url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("extractor: metadata pass failed for %s: %s", source_url, exc)
            failures.append((ErrorReason.METADATA_EXTRACTION_FAILED, "metadata", str(exc)))

        content_html: str | None = None
        try:
            content_html = self.extract_main_content(html, source_url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("extractor: main-content pass failed for %s: %s", source_url, exc)
            failures.append((ErrorReason.MAIN_CONTENT_EXTRACTION_FAILED, "main_content", str(exc)))

        if failures or page_metadata is None or content_html is None:
            reason, _, message = failures[0]
            raise ExtractionError(
                reason,
                message,
                details={
                    "failed_passes": [name for _, name, _ in failures],
                    "errors": {name: error for _, name, error in failures},
                },
            )

        return ExtractedContent(
            content_html=content_html,
            content_text=html_to_text(content_html),
            title=page_metadata.title,
            description=page_metadata.description,
            image_url=page_metadata.image_url,
            metadata=page_metadata.metadata,
        )

    # ------------------------------------------------------------------
    # Metadata pass
    # ------------------------------------------------------------------

    def extract_metadata(self, html: str, source_url: str) -> PageMetadata:
        """Collect OpenGraph, Twitter Card and basic HTML metadata."""
        soup = BeautifulSoup(html, "html.parser")

        og: dict[str, str] = {}
        twitter: dict[str, str] = {}
        description_tag: str | None = None

        for meta in soup.find_all("meta"):
            key = (meta.get("property") or meta.get("name") or "").strip().lower()
            content = _clean(meta.get("content"))
            if not key or content is None:
                continue
            if key.startswith("og:"):
                og.setdefault(key[3:], content)
            elif key.startswith("twitter:"):
                twitter.setdefault(key[8:], content)
            elif key == "description" and description_tag is None:
                description_tag = content

        title_tag = _clean(soup.title.get_text()) if soup.title else None
        title = og.get("title") or twitter.get("title") or title_tag
        if title is not None and len(title) > MAX_TITLE_LENGTH:
            title = title[:MAX_TITLE_LENGTH]

        description = og.get("description") or twitter.get("description") or description_tag

        image_url: str | None = None
        raw_image = og.get("image") or twitter.get("image")
        if raw_image:
            image_url = urllib.parse.urljoin(source_url, raw_image)
            if len(image_url) > MAX_IMAGE_URL_LENGTH:
                logger.debug("extractor: dropping %d-char image URL for %s", len(image_url), source_url)
                image_url = None

        canonical_url: str | None = None
        for link in soup.find_all("link", href=True):
            rel = link.get("rel") or []
            if isinstance(rel, str):
                rel = rel.split()
            if "canonical" in (value.lower() for value in rel):
                canonical_url = urllib.parse.urljoin(source_url, link["href"].strip())
                break

        return PageMetadata(
            title=title,
            description=description,
            image_url=image_url,
            metadata={
                "og": og,
                "twitter": twitter,
                "canonical_url": canonical_url,
                "final_url": source_url,
                "content_type": "html",
            },
        )

    # ------------------------------------------------------------------
    # Main-content pass
    # ------------------------------------------------------------------

    def extract_main_content(self, html: str, source_url: str) -> str:
        """Return the article body HTML.

        ``readability`` runs first.  If it raises or its output contains no
        text, ``trafilatura``'s HTML output is used instead.

        Raises:
            ValueError: If neither extractor finds any readable content.
        """
        from readability import Document  # noqa: PLC0415

        try:
            summary = Document(html, url=source_url).summary(html_partial=True)
        except Exception as exc:  # noqa: BLE001
            logger.debug("extractor: readability failed for %s: %s", source_url, exc)
            summary = ""

        if summary and html_to_text(summary):
            return summary

        import trafilatura  # noqa: PLC0415

        fallback = trafilatura.extract(
            html,
            url=source_url,
            output_format="html",
            include_comments=False,
            include_tables=True,
        )
        if fallback and html_to_text(fallback):
            logger.debug("extractor: using trafilatura fallback for %s", source_url)
            return fallback

        raise ValueError("no readable content found")
