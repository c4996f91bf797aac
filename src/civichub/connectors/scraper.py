"""Generic website scraper connector.

Breadth-first crawl from ``source.url``. Only same-site http(s) links are
followed; the crawl stops after ``source.max_pages`` fetches or when links
would exceed ``source.max_depth``, so it terminates on unbounded sites.

Config shape:
  {
    "articleSelector": str,     # CSS selector for followable links (default "a[href]")
    "articleUrlPattern": str,   # regex a discovered URL must match (optional)
    "sourceName": str,          # display name (optional)
  }
"""

from __future__ import annotations

import re
from collections import deque
from collections.abc import AsyncIterator
from datetime import datetime
from typing import TYPE_CHECKING
from urllib.parse import urldefrag, urljoin, urlparse

import html2text
import structlog
from bs4 import BeautifulSoup

from civichub.canonical import canonicalize
from civichub.connectors.base import ConnectorContext, SourceConnector
from civichub.errors import CivicHubError, ErrorCode, ItemError
from civichub.fetcher import is_same_site
from civichub.models.documents import ContentItem

if TYPE_CHECKING:
    from civichub.models.sources import Source

log = structlog.get_logger()

MIN_BODY_CHARS = 50


def _html_to_text(html: str) -> str:
    converter = html2text.HTML2Text()
    converter.ignore_links = True
    converter.ignore_images = True
    converter.body_width = 0
    return converter.handle(html).strip()


def _published_at(soup: BeautifulSoup) -> datetime | None:
    candidates = [
        soup.find("meta", attrs={"property": "article:published_time"}),
        soup.find("meta", attrs={"name": "date"}),
    ]
    values = [tag.get("content") for tag in candidates if tag is not None]
    time_tag = soup.find("time", attrs={"datetime": True})
    if time_tag is not None:
        values.append(time_tag.get("datetime"))
    for value in values:
        if not value:
            continue
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            continue
    return None


def extract_page(url: str, html: str) -> tuple[str, str, datetime | None]:
    """Return (title, markdown body, published date) for an HTML page."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "nav", "footer", "header"]):
        tag.decompose()

    og_title = soup.find("meta", attrs={"property": "og:title"})
    if og_title is not None and og_title.get("content"):
        title = str(og_title["content"]).strip()
    elif soup.title is not None and soup.title.string:
        title = soup.title.string.strip()
    elif soup.h1 is not None:
        title = soup.h1.get_text(" ", strip=True)
    else:
        title = url

    main = soup.find("article") or soup.find("main") or soup.body or soup
    return title, _html_to_text(str(main)), _published_at(soup)


class ScraperConnector(SourceConnector):
    def __init__(self, source: Source, context: ConnectorContext) -> None:
        super().__init__(source, context)
        self.selector = self.source.config.get("articleSelector") or "a[href]"
        self.source_name = self.source.config.get("sourceName") or source.id
        pattern = self.source.config.get("articleUrlPattern")
        try:
            self.url_pattern = re.compile(pattern) if pattern else None
        except re.error as exc:
            raise CivicHubError(
                code=ErrorCode.CONFIG_ERROR,
                message=f"Invalid articleUrlPattern for {source.id!r}: {exc}",
            ) from exc

    def discover_links(self, page_url: str, soup: BeautifulSoup) -> list[str]:
        links: list[str] = []
        for anchor in soup.select(self.selector):
            href = anchor.get("href")
            if not href:
                continue
            resolved, _fragment = urldefrag(urljoin(page_url, str(href)))
            # Blocks javascript:, mailto:, data: and friends
            if urlparse(resolved).scheme not in ("http", "https"):
                continue
            if not is_same_site(resolved, self.source.url):
                continue
            if self.url_pattern is not None and not self.url_pattern.search(resolved):
                continue
            links.append(resolved)
        return links

    async def collect(self) -> AsyncIterator[ContentItem | ItemError]:
        queue: deque[tuple[str, int]] = deque([(self.source.url, 0)])
        seen = {canonicalize(self.source.url)}
        fetched = 0

        while queue and fetched < self.source.max_pages:
            url, depth = queue.popleft()
            fetched += 1
            try:
                html = await self.fetch_page(url)
            except CivicHubError as exc:
                yield ItemError.from_exception(exc)
                continue
            except Exception as exc:
                log.warning("scrape_page_failed", connector=self.id, url=url, exc_info=True)
                yield ItemError(kind=ErrorCode.FETCH_FAILED, message=f"{url}: {exc}")
                continue

            try:
                soup = BeautifulSoup(html, "html.parser")
                if depth < self.source.max_depth:
                    for link in self.discover_links(url, soup):
                        key = canonicalize(link)
                        if key not in seen:
                            seen.add(key)
                            queue.append((link, depth + 1))
                title, body, published_at = extract_page(url, html)
            except Exception as exc:
                yield ItemError(kind=ErrorCode.PARSE_FAILED, message=f"{url}: {exc}")
                continue

            if len(body) < MIN_BODY_CHARS:
                log.debug("scrape_page_too_short", connector=self.id, url=url, chars=len(body))
                continue

            yield ContentItem(
                url=url,
                title=title,
                body=body,
                category=self.source.category,
                published_at=published_at,
                metadata={"source_name": self.source_name, "source_url": self.source.url},
            )

        log.debug("scrape_complete", connector=self.id, fetched=fetched, queued=len(queue))


def create_scraper_connector(source: Source, context: ConnectorContext) -> SourceConnector:
    return ScraperConnector(source, context)
