"""URL safety validation with SSRF protection.

Checks run in order and short-circuit on the first failure:

1. **Format** — the URL must parse and carry a scheme and hostname.
2. **Scheme** — only ``http`` and ``https`` are fetched.
3. **DNS** — the hostname is resolved (A records first, AAAA only when no A
   records exist).  IP literals are used as-is.
4. **Block-list** — every resolved address is tested against the injected
   private/reserved networks.

Validating the *resolved* address rather than the hostname string closes the
bypass where a public-looking name points at an internal service.  The same
validator also guards every outgoing connection made by
:mod:`link_archiver.archiving.http_fetcher`.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import urllib.parse
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from link_archiver.archiving.config import ALLOWED_SCHEMES, DEFAULT_BLOCKED_NETWORKS
from link_archiver.core.exceptions import ErrorReason, UrlValidationError

logger = logging.getLogger(__name__)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network
IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

#: Async callable mapping a hostname to its IP address strings.
Resolver = Callable[[str], Awaitable[list[str]]]


@dataclass(frozen=True)
class ValidatedURL:
    """A URL that passed every safety check.

    Attributes:
        url: The original URL, unchanged.
        hostname: Hostname extracted from the URL.
        addresses: IP addresses the hostname resolved to.
    """

    url: str
    hostname: str
    addresses: tuple[str, ...]


# ---------------------------------------------------------------------------
# DNS resolution
# ---------------------------------------------------------------------------


async def resolve_host(hostname: str) -> list[str]:
    """Resolve ``hostname`` using the system resolver.

    A records are tried first; AAAA records are only looked up when the name
    has no IPv4 address.

    Raises:
        socket.gaierror: If neither lookup returns an address.
    """
    loop = asyncio.get_running_loop()
    last_error: socket.gaierror | None = None
    for family in (socket.AF_INET, socket.AF_INET6):
        try:
            infos = await loop.getaddrinfo(hostname, None, family=family, type=socket.SOCK_STREAM)
        except socket.gaierror as exc:
            last_error = exc
            continue
        addresses = list(dict.fromkeys(info[4][0] for info in infos))
        if addresses:
            return addresses
    raise last_error or socket.gaierror(f"no addresses for {hostname}")


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class UrlValidator:
    """Classifies URLs as safe or unsafe to fetch.

    Args:
        blocked_networks: Address ranges that must never be contacted.
            Tests can pass an empty tuple for a permissive validator.
        resolver: Async hostname resolver.  Defaults to :func:`resolve_host`.
        timeout: Seconds allowed for DNS resolution.
    """

    def __init__(
        self,
        blocked_networks: Iterable[IPNetwork] = DEFAULT_BLOCKED_NETWORKS,
        *,
        resolver: Resolver | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._blocked_networks: tuple[IPNetwork, ...] = tuple(blocked_networks)
        self._resolver = resolver or resolve_host
        self._timeout = timeout

    async def validate(self, url: str) -> ValidatedURL:
        """Validate ``url`` and return it unchanged with its resolved addresses.

        Raises:
            UrlValidationError: With reason ``invalid_format``,
                ``invalid_scheme``, ``dns_resolution_failed`` or
                ``private_ip_blocked``.
        """
        hostname = self._parse(url)
        addresses = await self._resolve(url, hostname)

        for address in addresses:
            blocked_by = self._blocked_network_for(address)
            if blocked_by is not None:
                logger.warning(
                    "url_validator: %s resolves to blocked address %s (%s)",
                    url,
                    address,
                    blocked_by,
                )
                raise UrlValidationError(
                    ErrorReason.PRIVATE_IP_BLOCKED,
                    "URL resolves to a private or reserved IP address",
                    details={
                        "hostname": hostname,
                        "resolved_ip": address,
                        "blocked_network": str(blocked_by),
                    },
                )

        return ValidatedURL(url=url, hostname=hostname, addresses=tuple(addresses))

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    @staticmethod
    def _parse(url: str) -> str:
        """Return the URL's hostname after the format and scheme checks."""
        if not isinstance(url, str) or not url.strip():
            raise UrlValidationError(ErrorReason.INVALID_FORMAT, "URL is empty")
        # The URL is stored and fetched as given, so it must already be trimmed.
        if url != url.strip():
            raise UrlValidationError(
                ErrorReason.INVALID_FORMAT,
                "URL has leading or trailing whitespace",
                details={"url": url},
            )

        try:
            parts = urllib.parse.urlsplit(url)
            hostname = parts.hostname
            parts.port  # noqa: B018  (raises ValueError for a bad port)
        except ValueError as exc:
            raise UrlValidationError(
                ErrorReason.INVALID_FORMAT,
                f"Malformed URL: {exc}",
                details={"url": url},
            ) from exc

        if not parts.scheme:
            raise UrlValidationError(
                ErrorReason.INVALID_FORMAT, "URL has no scheme", details={"url": url}
            )

        scheme = parts.scheme.lower()
        if scheme not in ALLOWED_SCHEMES:
            raise UrlValidationError(
                ErrorReason.INVALID_SCHEME,
                "URL scheme must be http or https",
                details={"scheme": scheme, "allowed_schemes": sorted(ALLOWED_SCHEMES)},
            )

        if not hostname:
            raise UrlValidationError(
                ErrorReason.INVALID_FORMAT, "URL has no hostname", details={"url": url}
            )
        return hostname

    async def _resolve(self, url: str, hostname: str) -> list[str]:
        try:
            return [str(ipaddress.ip_address(hostname))]
        except ValueError:
            pass  # Not an IP literal

        try:
            addresses = await asyncio.wait_for(self._resolver(hostname), timeout=self._timeout)
        except (OSError, asyncio.TimeoutError, UnicodeError) as exc:
            logger.info("url_validator: DNS resolution failed for %s: %s", hostname, exc)
            raise UrlValidationError(
                ErrorReason.DNS_RESOLUTION_FAILED,
                f"DNS resolution failed for {hostname}",
                details={"hostname": hostname, "error": str(exc) or type(exc).__name__},
            ) from exc

        if not addresses:
            raise UrlValidationError(
                ErrorReason.DNS_RESOLUTION_FAILED,
                f"DNS resolution returned no addresses for {hostname}",
                details={"hostname": hostname},
            )
        logger.debug("url_validator: %s resolved to %s", url, addresses)
        return addresses

    def _blocked_network_for(self, address: str) -> IPNetwork | None:
        """Return the block-list entry containing ``address``, if any."""
        try:
            ip: IPAddress = ipaddress.ip_address(address.split("%", 1)[0])
        except ValueError:
            # Unparseable resolver output is never trusted.
            return ipaddress.ip_network("0.0.0.0/0")

        candidates: list[IPAddress] = [ip]
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            candidates.append(ip.ipv4_mapped)

        for candidate in candidates:
            for network in self._blocked_networks:
                if candidate.version == network.version and candidate in network:
                    return network
        return None
