"""Application-wide exception hierarchy for Link Archiver.

All custom exceptions subclass ``LinkArchiverError``, enabling consistent
error handling and structured logging across the application.

Hierarchy::

    LinkArchiverError
    ├── ArchivalError            (reason: ErrorReason, details, http_status)
    │   ├── UrlValidationError
    │   ├── FetchError
    │   ├── ExtractionError
    │   └── SanitizationError
    ├── InvalidTransitionError
    ├── ArchiveNotFoundError
    └── ArchiveAlreadyExistsError
"""

from __future__ import annotations

import enum
from typing import Any


class ErrorReason(str, enum.Enum):
    """Machine-readable failure reason recorded in the transition log."""

    # Validation
    INVALID_FORMAT = "invalid_format"
    INVALID_SCHEME = "invalid_scheme"
    DNS_RESOLUTION_FAILED = "dns_resolution_failed"
    PRIVATE_IP_BLOCKED = "private_ip_blocked"
    # Fetch
    SIZE_LIMIT_EXCEEDED = "size_limit_exceeded"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    CONNECTION_FAILED = "connection_failed"
    TIMEOUT = "timeout"
    HTTP_ERROR = "http_error"
    UNSUPPORTED_CONTENT_TYPE = "unsupported_content_type"
    # Extraction
    METADATA_EXTRACTION_FAILED = "metadata_extraction_failed"
    MAIN_CONTENT_EXTRACTION_FAILED = "main_content_extraction_failed"
    # Sanitization
    SANITIZATION_FAILED = "sanitization_failed"
    # Orchestrator
    CANCELLED = "cancelled"
    DISABLED = "disabled"
    UNEXPECTED_ERROR = "unexpected_error"


#: Reasons that a later attempt can plausibly fix.
RETRYABLE_REASONS: frozenset[ErrorReason] = frozenset(
    {ErrorReason.CONNECTION_FAILED, ErrorReason.TIMEOUT}
)


class LinkArchiverError(Exception):
    """Base class for all Link Archiver exceptions."""


# ---------------------------------------------------------------------------
# Pipeline stage exceptions
# ---------------------------------------------------------------------------


class ArchivalError(LinkArchiverError):
    """Raised by a pipeline stage when it cannot produce its output.

    Args:
        reason: Structured reason code.
        message: Human-readable description of the failure.
        details: Stage-specific facts to record in the transition log
            (resolved IP, byte counts, redirect counts, ...).
        http_status: HTTP status code, when the failure came from a response.
    """

    def __init__(
        self,
        reason: ErrorReason,
        message: str,
        details: dict[str, Any] | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.details = details or {}
        self.http_status = http_status

    @property
    def retryable(self) -> bool:
        """``True`` if the failure is transient (timeouts, connection errors)."""
        return self.reason in RETRYABLE_REASONS


class UrlValidationError(ArchivalError):
    """Raised when a URL fails format, scheme, DNS or private-address checks."""


class FetchError(ArchivalError):
    """Raised when the HTTP fetch fails or its response is rejected."""


class ExtractionError(ArchivalError):
    """Raised when the metadata or main-content extraction pass fails."""


class SanitizationError(ArchivalError):
    """Raised when extracted HTML cannot be sanitized."""


# ---------------------------------------------------------------------------
# Lifecycle exceptions
# ---------------------------------------------------------------------------


class InvalidTransitionError(LinkArchiverError):
    """Raised when a state change is not an edge of the archive state machine.

    Args:
        from_state: Current state of the archive.
        to_state: Requested target state.
    """

    def __init__(self, from_state: str | None, to_state: str) -> None:
        super().__init__(f"Cannot transition archive from {from_state!r} to {to_state!r}")
        self.from_state = from_state
        self.to_state = to_state


class ArchiveNotFoundError(LinkArchiverError):
    """Raised when no archive exists for the requested link or archive ID."""


class ArchiveAlreadyExistsError(LinkArchiverError):
    """Raised when creating a second archive for a link that already has one."""
