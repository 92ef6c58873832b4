"""Constants for the content archival pipeline.

Tunable values (timeouts, size limits, retry policy) live in
:class:`link_archiver.config.settings.ArchiveSettings`; this module only holds
values that are fixed by design.
"""

from __future__ import annotations

import ipaddress

# ---------------------------------------------------------------------------
# URL validation
# ---------------------------------------------------------------------------

#: URL schemes the pipeline is allowed to fetch.
ALLOWED_SCHEMES: frozenset[str] = frozenset({"http", "https"})

#: Private, loopback, link-local and otherwise internal address ranges.
#: A URL whose host resolves into any of these is never fetched.
DEFAULT_BLOCKED_NETWORKS: tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...] = tuple(
    ipaddress.ip_network(cidr)
    for cidr in (
        # IPv4
        "0.0.0.0/8",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        # IPv6
        "::1/128",
        "fc00::/7",
        "fe80::/10",
    )
)

# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

#: Status codes treated as redirects and followed manually.
REDIRECT_STATUSES: frozenset[int] = frozenset({301, 302, 303, 307, 308})

#: Content-Type values that go through HTML extraction.
HTML_CONTENT_TYPES: frozenset[str] = frozenset({"text/html", "application/xhtml+xml"})

# ---------------------------------------------------------------------------
# Extraction limits (match the content_archives column sizes)
# ---------------------------------------------------------------------------

#: Titles longer than this are truncated.
MAX_TITLE_LENGTH: int = 500

#: Image URLs longer than this are discarded.
MAX_IMAGE_URL_LENGTH: int = 2048
