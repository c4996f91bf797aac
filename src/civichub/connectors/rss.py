"""Generic RSS/Atom feed connector.

Config shape:
  { "feedUrl": str, "sourceName": str (optional) }
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import feedparser
import structlog

from civichub.canonical import normalize_content
from civichub.connectors.base import ConnectorContext, SourceConnector
from civichub.errors import CivicHubError, ErrorCode, ItemError
from civichub.models.documents import ContentItem

if TYPE_CHECKING:
    from civichub.models.sources import Source

log = structlog.get_logger()


def parse_feed_links(text: str) -> list[str]:
    """Return the http(s) entry links of an RSS/Atom document, in feed order."""
    feed = feedparser.parse(text)
    links: list[str] = []
    for entry in feed.entries:
        link = (entry.get("link") or "").strip()
        if link.startswith(("http://", "https://")):
            links.append(link)
    return links


def _entry_datetime(entry: Any) -> datetime | None:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return None
    return datetime(*parsed[:6], tzinfo=UTC)


def _entry_body(entry: Any) -> str:
    content = entry.get("content")
    if content:
        raw = content[0].get("value", "")
    else:
        raw = entry.get("summary", "") or entry.get("description", "")
    return normalize_content(raw)


class RssConnector(SourceConnector):
    def __init__(self, source: Source, context: ConnectorContext) -> None:
        super().__init__(source, context)
        self.feed_url = self.require_config("feedUrl")
        self.source_name = self.source.config.get("sourceName") or source.id

    async def collect(self) -> AsyncIterator[ContentItem | ItemError]:
        try:
            text = await self.fetch_page(self.feed_url)
        except CivicHubError as exc:
            yield ItemError.from_exception(exc)
            return

        feed = feedparser.parse(text)
        if feed.bozo and not feed.entries:
            yield ItemError(
                kind=ErrorCode.PARSE_FAILED,
                message=f"Unreadable feed at {self.feed_url}: {feed.get('bozo_exception')}",
            )
            return

        for entry in feed.entries[: self.source.max_pages]:
            title = (entry.get("title") or "").strip()
            link = (entry.get("link") or "").strip()
            if not link:
                yield ItemError(
                    kind=ErrorCode.PARSE_FAILED,
                    message=f"Feed entry without link in {self.feed_url}: {title!r}",
                )
                continue

            metadata = {"source_name": self.source_name}
            if entry.get("category"):
                metadata["rss_category"] = str(entry.get("category"))

            yield ContentItem(
                url=link,
                title=title or link,
                body=_entry_body(entry) or title,
                category=self.source.category,
                published_at=_entry_datetime(entry),
                metadata=metadata,
            )

        log.debug("rss_feed_parsed", connector=self.id, entries=len(feed.entries))


def create_rss_connector(source: Source, context: ConnectorContext) -> SourceConnector:
    return RssConnector(source, context)
