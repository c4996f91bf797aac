"""Shared test fixtures for the civichub test suite."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import aiosqlite
import pytest

from civichub.answer_cache import AnswerCache
from civichub.config import Settings
from civichub.connectors import build_default_registry
from civichub.errors import CivicHubError, ErrorCode
from civichub.models.sources import Source
from civichub.state import AppState
from civichub.store import Store
from civichub.telemetry import TelemetrySink

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


class FakeFetcher:
    """In-memory FetcherProtocol: ``pages`` maps URL to body or exception."""

    def __init__(self, pages: dict[str, str | Exception] | None = None) -> None:
        self.pages: dict[str, str | Exception] = dict(pages or {})
        self.calls: list[str] = []

    async def fetch(self, url: str) -> str:
        self.calls.append(url)
        value = self.pages.get(url)
        if value is None:
            raise CivicHubError(code=ErrorCode.FETCH_FAILED, message=f"HTTP 404 fetching {url}")
        if isinstance(value, Exception):
            raise value
        return value


class FakeGenerator:
    """TextGenerator returning a fixed answer and recording prompts."""

    def __init__(self, answer: str = "<p>Generated answer</p>") -> None:
        self.answer = answer
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        await asyncio.sleep(0.01)
        return self.answer


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings isolated from any local civichub.yaml, with pacing disabled."""
    return Settings(
        store={"db_path": str(tmp_path / "civichub.db")},
        sources={"path": str(tmp_path / "sources.json")},
        runner={"request_delay_seconds": 0, "pool_size": 2},
        monitor={"deadline_margin_seconds": 0},
        cache={"claim_ttl_seconds": 5, "claim_poll_interval_seconds": 0.01},
    )


@pytest.fixture()
async def db() -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(":memory:") as conn:
        yield conn


@pytest.fixture()
async def store(db: aiosqlite.Connection) -> Store:
    store = Store(db)
    await store.init_db()
    return store


@pytest.fixture()
async def answer_cache(store: Store, settings: Settings) -> AnswerCache:
    cache = AnswerCache(store, settings.cache)
    await cache.init_db()
    return cache


@pytest.fixture()
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture()
def rss_source() -> Source:
    return Source(
        id="needham:news",
        town_id="needham",
        url="https://www.needhamma.gov/news",
        type="rss",
        name="Town News",
        category="news",
        schedule="hourly",
        priority=1,
        config={"feedUrl": "https://www.needhamma.gov/rss.aspx?news"},
    )


@pytest.fixture()
def rss_feed() -> str:
    return _RSS_FEED


_RSS_FEED = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Needham News</title>
<item><title>Transfer Station Holiday Hours</title>
<link>https://www.needhamma.gov/news/transfer-station?utm_source=rss</link>
<description>&lt;p&gt;The transfer station will close early on Friday.&lt;/p&gt;</description>
<pubDate>Mon, 05 Oct 2026 14:00:00 GMT</pubDate></item>
<item><title>Town Meeting Warrant Posted</title>
<link>https://www.needhamma.gov/news/town-meeting</link>
<description>The warrant for the fall town meeting is now available.</description>
</item>
</channel></rss>
"""


@pytest.fixture()
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture()
async def app_state(
    settings: Settings,
    store: Store,
    answer_cache: AnswerCache,
    fetcher: FakeFetcher,
    generator: FakeGenerator,
) -> AsyncIterator[AppState]:
    """AppState over the in-memory store with fake network collaborators."""
    telemetry = TelemetrySink(store)
    yield AppState(
        settings=settings,
        store=store,
        registry=build_default_registry(),
        fetcher=fetcher,
        answer_cache=answer_cache,
        telemetry=telemetry,
        generator=generator,
    )
    await telemetry.drain()
