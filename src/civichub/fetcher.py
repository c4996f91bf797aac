"""HTTP page fetcher with private-address blocking and polite pacing.

All network I/O for sources and tracked pages goes through a single Fetcher
instance. The Fetcher receives an httpx.AsyncClient via constructor
injection; the server lifespan (or the one-shot CLI) owns the client
lifecycle.
"""

from __future__ import annotations

import asyncio
import ipaddress
import time
from typing import TYPE_CHECKING
from urllib.parse import urljoin, urlparse

import httpx
import structlog

from civichub.errors import CivicHubError, ErrorCode

if TYPE_CHECKING:
    from civichub.config import FetcherSettings

log = structlog.get_logger()

PRIVATE_NETWORKS: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
]


def build_http_client(settings: FetcherSettings) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    return httpx.AsyncClient(
        follow_redirects=False,
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers={"User-Agent": settings.user_agent},
        limits=httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        ),
    )


def base_domain(hostname: str) -> str:
    """Return the last two DNS labels: ``'www.needhamma.gov'`` → ``'needhamma.gov'``."""
    parts = hostname.rstrip(".").split(".")
    return ".".join(parts[-2:]) if len(parts) >= 2 else hostname


def is_private_address(url: str) -> bool:
    """True when the URL host is a literal IP inside a private range."""
    hostname = urlparse(url).hostname or ""
    try:
        addr = ipaddress.ip_address(hostname)
    except ValueError:
        return False  # hostname is a domain name, not an IP
    return any(addr in net for net in PRIVATE_NETWORKS)


def is_same_site(url: str, site_url: str) -> bool:
    """True when both URLs share a base domain. Used to keep crawls on-site."""
    host = urlparse(url).hostname or ""
    site_host = urlparse(site_url).hostname or ""
    return bool(host) and base_domain(host) == base_domain(site_host)


class RateLimiter:
    """Enforces a minimum interval between successive ``wait()`` returns."""

    def __init__(self, min_interval_seconds: float) -> None:
        self._interval = min_interval_seconds
        self._last: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        if self._interval <= 0:
            return
        async with self._lock:
            now = time.monotonic()
            if self._last is not None:
                remaining = self._interval - (now - self._last)
                if remaining > 0:
                    await asyncio.sleep(remaining)
            self._last = time.monotonic()


class Fetcher:
    """HTTP fetcher with per-hop redirect validation."""

    def __init__(self, client: httpx.AsyncClient, settings: FetcherSettings) -> None:
        self._client = client
        self._settings = settings

    async def fetch(self, url: str) -> str:
        """Fetch a URL and return its text.

        Raises CivicHubError(FETCH_FAILED) on malformed or blocked URLs,
        network errors, redirect loops and non-2xx responses.
        """
        current_url = url
        max_redirects = self._settings.max_redirects

        try:
            for hop in range(max_redirects + 1):
                if urlparse(current_url).scheme not in ("http", "https"):
                    raise CivicHubError(
                        code=ErrorCode.FETCH_FAILED,
                        message=f"Unsupported URL scheme: {current_url}",
                    )
                if self._settings.block_private_ips and is_private_address(current_url):
                    log.warning("fetch_blocked", url=current_url, reason="private_address")
                    raise CivicHubError(
                        code=ErrorCode.FETCH_FAILED,
                        message=f"Private address not allowed: {current_url}",
                    )

                response = await self._client.get(current_url)

                if response.is_redirect and "location" in response.headers:
                    if hop == max_redirects:
                        raise CivicHubError(
                            code=ErrorCode.FETCH_FAILED,
                            message=f"Too many redirects fetching {url}",
                        )
                    current_url = urljoin(current_url, response.headers["location"])
                    continue

                if not response.is_success:
                    raise CivicHubError(
                        code=ErrorCode.FETCH_FAILED,
                        message=f"HTTP {response.status_code} fetching {url}",
                        recoverable=response.status_code != 404,
                    )

                log.debug(
                    "fetch_complete",
                    url=url,
                    status_code=response.status_code,
                    content_length=len(response.text),
                )
                return response.text

        except CivicHubError:
            raise
        except httpx.HTTPError as exc:
            raise CivicHubError(
                code=ErrorCode.FETCH_FAILED,
                message=f"Network error fetching {url}: {exc}",
                recoverable=True,
            ) from exc
        except (httpx.InvalidURL, UnicodeError) as exc:
            # Malformed port or host, or a hostname that fails IDNA encoding
            raise CivicHubError(
                code=ErrorCode.FETCH_FAILED,
                message=f"Invalid URL {url}: {exc}",
            ) from exc

        # Unreachable but satisfies the type checker
        raise CivicHubError(code=ErrorCode.FETCH_FAILED, message="Redirect loop")
