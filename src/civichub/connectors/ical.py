"""Generic iCalendar (ICS) feed connector.

Config shape:
  { "feedUrl": str, "sourceName": str (optional), "daysAhead": int (default 90) }

Only VEVENT blocks starting inside ``[now, now + daysAhead]`` are emitted.
Events without a URL get a synthetic ``?uid=`` key on the feed URL so they
still deduplicate by (town, canonical URL).
"""

from __future__ import annotations

import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from civichub.connectors.base import ConnectorContext, SourceConnector
from civichub.errors import CivicHubError, ErrorCode, ItemError
from civichub.models.documents import ContentItem

if TYPE_CHECKING:
    from civichub.models.sources import Source


@dataclass
class ICalEvent:
    uid: str
    summary: str
    description: str
    dtstart: str
    dtend: str
    location: str
    url: str
    dtstart_tzid: str = ""
    dtend_tzid: str = ""


def _unfold_lines(text: str) -> str:
    # RFC 5545 line folding: CRLF followed by a space or tab continues the line
    return re.sub(r"\r?\n[ \t]", "", text)


def _prop(block: str, name: str) -> str:
    """Value of a property, ignoring parameters like ``DTSTART;VALUE=DATE:``."""
    match = re.search(rf"^{name}(?:;[^:\r\n]*)?:(.*)$", block, re.IGNORECASE | re.MULTILINE)
    return match.group(1).strip() if match else ""


def _param(block: str, name: str, param: str) -> str:
    """Value of one property parameter, e.g. ``TZID`` in ``DTSTART;TZID=America/New_York:``."""
    match = re.search(
        rf"^{name};(?:[^:\r\n]*;)?{param}=(\"[^\"]*\"|[^;:\r\n]*)",
        block,
        re.IGNORECASE | re.MULTILINE,
    )
    return match.group(1).strip('"') if match else ""


def _unescape(text: str) -> str:
    return (
        text.replace("\\n", "\n")
        .replace("\\N", "\n")
        .replace("\\,", ",")
        .replace("\\;", ";")
        .replace("\\\\", "\\")
        .strip()
    )


def parse_ical(text: str) -> list[ICalEvent]:
    events: list[ICalEvent] = []
    for chunk in _unfold_lines(text).split("BEGIN:VEVENT")[1:]:
        block = chunk.split("END:VEVENT")[0]
        events.append(
            ICalEvent(
                uid=_prop(block, "UID"),
                summary=_unescape(_prop(block, "SUMMARY")),
                description=_unescape(_prop(block, "DESCRIPTION")),
                dtstart=_prop(block, "DTSTART"),
                dtend=_prop(block, "DTEND"),
                location=_unescape(_prop(block, "LOCATION")),
                url=_prop(block, "URL"),
                dtstart_tzid=_param(block, "DTSTART", "TZID"),
                dtend_tzid=_param(block, "DTEND", "TZID"),
            )
        )
    return events


def parse_ical_datetime(value: str, tzid: str = "") -> datetime:
    """Parse ``YYYYMMDD`` or ``YYYYMMDDTHHMMSS[Z]`` into a UTC datetime.

    Local times with a ``TZID`` are converted from that zone. Floating times
    and zones missing from the tz database are read as UTC.
    """
    if len(value) == 8:
        return datetime.strptime(value, "%Y%m%d").replace(tzinfo=UTC)
    local = datetime.strptime(value.rstrip("Z")[:15], "%Y%m%dT%H%M%S")
    if value.endswith("Z") or not tzid:
        return local.replace(tzinfo=UTC)
    try:
        zone = ZoneInfo(tzid)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return local.replace(tzinfo=UTC)
    return local.replace(tzinfo=zone).astimezone(UTC)


class ICalConnector(SourceConnector):
    def __init__(self, source: Source, context: ConnectorContext) -> None:
        super().__init__(source, context)
        self.feed_url = self.require_config("feedUrl")
        self.source_name = self.source.config.get("sourceName") or source.id
        self.days_ahead = int(self.source.config.get("daysAhead", 90))

    async def collect(self) -> AsyncIterator[ContentItem | ItemError]:
        try:
            text = await self.fetch_page(self.feed_url)
        except CivicHubError as exc:
            yield ItemError.from_exception(exc)
            return

        if "BEGIN:VCALENDAR" not in text:
            yield ItemError(
                kind=ErrorCode.PARSE_FAILED,
                message=f"Not an iCalendar document: {self.feed_url}",
            )
            return

        now = datetime.now(UTC)
        cutoff = now + timedelta(days=self.days_ahead)
        emitted = 0

        for event in parse_ical(text):
            if emitted >= self.source.max_pages:
                break
            if not event.dtstart:
                continue
            try:
                start = parse_ical_datetime(event.dtstart, event.dtstart_tzid)
                end = (
                    parse_ical_datetime(event.dtend, event.dtend_tzid) if event.dtend else None
                )
            except ValueError:
                yield ItemError(
                    kind=ErrorCode.PARSE_FAILED,
                    message=f"Bad date {event.dtstart!r} in event {event.summary!r}",
                )
                continue
            if not now <= start <= cutoff:
                continue

            key = event.uid or f"{event.summary}-{event.dtstart}"
            url = event.url or f"{self.feed_url}?uid={quote(key, safe='')}"
            body_parts = [event.description]
            if event.location:
                body_parts.append(f"Location: {event.location}")

            metadata = {"source_name": self.source_name, "event_start": start.isoformat()}
            if end is not None:
                metadata["event_end"] = end.isoformat()
            if event.location:
                metadata["event_location"] = event.location

            emitted += 1
            yield ContentItem(
                url=url,
                title=event.summary or "Untitled Event",
                body="\n\n".join(part for part in body_parts if part),
                category=self.source.category,
                published_at=start,
                metadata=metadata,
            )


def create_ical_connector(source: Source, context: ConnectorContext) -> SourceConnector:
    return ICalConnector(source, context)
