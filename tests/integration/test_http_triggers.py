"""End-to-end tests for the HTTP triggers, search routes and cron auth."""

from __future__ import annotations

from typing import TYPE_CHECKING

from civichub import __version__
from civichub.models.documents import ContentItem

if TYPE_CHECKING:
    import httpx
    import pytest

    from civichub.models.sources import Source
    from civichub.state import AppState
    from tests.conftest import FakeFetcher, FakeGenerator

FEED_URL = "https://www.needhamma.gov/rss.aspx?news"
AUTH = {"Authorization": "Bearer s3cret-token"}

INGEST_KEYS = {
    "timestamp",
    "connectorsRun",
    "totalItemsUpserted",
    "totalItemsSkipped",
    "totalErrors",
    "results",
}
MONITOR_KEYS = {
    "status",
    "timestamp",
    "checked",
    "changed",
    "changedUrls",
    "newUrls",
    "errors",
    "staleFlagged",
    "durationMs",
}


# ---------------------------------------------------------------------------
# Health and cron auth
# ---------------------------------------------------------------------------


class TestHealth:
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["version"] == __version__
        assert "timestamp" in body


class TestCronAuth:
    async def test_missing_secret_is_401(self, secured_client: httpx.AsyncClient) -> None:
        response = await secured_client.get("/api/cron/ingest")
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    async def test_wrong_secret_is_401(self, secured_client: httpx.AsyncClient) -> None:
        response = await secured_client.get(
            "/api/cron/monitor", headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    async def test_correct_secret_passes(self, secured_client: httpx.AsyncClient) -> None:
        response = await secured_client.get("/api/cron/monitor", headers=AUTH)
        assert response.status_code == 200

    async def test_public_routes_need_no_secret(self, secured_client: httpx.AsyncClient) -> None:
        assert (await secured_client.get("/api/health")).status_code == 200
        assert (await secured_client.get("/api/search", params={"q": "hours"})).status_code == 200

    async def test_disabled_when_secret_empty(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/cron/ingest")
        assert response.status_code == 200


# ---------------------------------------------------------------------------
# Ingest trigger
# ---------------------------------------------------------------------------


class TestIngestTrigger:
    async def test_summary(
        self,
        client: httpx.AsyncClient,
        app_state: AppState,
        fetcher: FakeFetcher,
        rss_source: Source,
        rss_feed: str,
    ) -> None:
        fetcher.pages[FEED_URL] = rss_feed
        await app_state.store.upsert_source(rss_source)

        response = await client.get("/api/cron/ingest", params={"force": "true"})

        assert response.status_code == 200
        body = response.json()
        assert set(body) == INGEST_KEYS
        assert body["connectorsRun"] == 1
        assert body["totalItemsUpserted"] == 2
        assert body["totalErrors"] == 0
        [result] = body["results"]
        assert result["connectorId"] == "needham:news"
        assert result["itemsFound"] == 2
        assert result["deadlineReached"] is False

    async def test_failing_source_does_not_fail_request(
        self, client: httpx.AsyncClient, app_state: AppState, rss_source: Source
    ) -> None:
        await app_state.store.upsert_source(rss_source)

        response = await client.get("/api/cron/ingest")

        assert response.status_code == 200
        body = response.json()
        assert body["connectorsRun"] == 1
        assert body["totalErrors"] == 1
        assert body["results"][0]["errors"][0].startswith("FETCH_FAILED")

    async def test_generate_without_generator(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/cron/ingest", params={"generate": "true"})

        body = response.json()
        assert body["articlesGenerated"] == 0
        assert body["generationErrors"][0].startswith("CONFIG_ERROR")

    async def test_generate_with_generator(
        self, client: httpx.AsyncClient, app_state: AppState
    ) -> None:
        class Articles:
            def __init__(self) -> None:
                self.towns: list[str | None] = []

            async def generate_all(self, town_id: str | None) -> int:
                self.towns.append(town_id)
                return 3

        articles = Articles()
        app_state.content_generator = articles

        response = await client.get(
            "/api/cron/ingest", params={"generate": "true", "town": "needham"}
        )

        assert response.json()["articlesGenerated"] == 3
        assert articles.towns == ["needham"]

    async def test_invalid_schedule_is_400(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/cron/ingest", params={"schedule": "monthly"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "INVALID_INPUT"
        assert "timestamp" in body

    async def test_unexpected_error_is_500(
        self,
        client: httpx.AsyncClient,
        app_state: AppState,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        async def exploding(**kwargs: object) -> list[Source]:
            raise RuntimeError("database exploded")

        monkeypatch.setattr(app_state.store, "list_sources", exploding)

        response = await client.get("/api/cron/ingest")

        assert response.status_code == 500
        body = response.json()
        assert set(body) == {"error", "timestamp"}
        assert body["error"] == "database exploded"


# ---------------------------------------------------------------------------
# Monitor trigger
# ---------------------------------------------------------------------------


class TestMonitorTrigger:
    async def test_report(
        self, client: httpx.AsyncClient, app_state: AppState, fetcher: FakeFetcher
    ) -> None:
        url = "https://needhamma.gov/rts"
        await app_state.store.upsert_document(
            town_id="needham",
            source_id="needham:news",
            canonical_url=url,
            item=ContentItem(url=url, title="Transfer Station", body="Open 7am"),
            content_hash="seed",
            relevance_tier="primary",
        )
        fetcher.pages[url] = "<p>Open 7am</p>"

        first = (await client.get("/api/cron/monitor")).json()
        assert set(first) == MONITOR_KEYS
        assert first["status"] == "completed"
        assert first["checked"] == 1
        assert first["newUrls"] == [url]

        fetcher.pages[url] = "<p>Closed today</p>"
        second = (await client.get("/api/cron/monitor", params={"town": "needham"})).json()
        assert second["changed"] == 1
        assert second["changedUrls"] == [url]
        assert second["errors"] == []

    async def test_errors_are_strings(
        self, client: httpx.AsyncClient, app_state: AppState
    ) -> None:
        url = "https://needhamma.gov/gone"
        await app_state.store.upsert_document(
            town_id="needham",
            source_id="needham:news",
            canonical_url=url,
            item=ContentItem(url=url, title="Gone", body="Gone"),
            content_hash="seed",
            relevance_tier="primary",
        )

        body = (await client.get("/api/cron/monitor")).json()

        assert body["status"] == "completed"
        assert body["errors"] == [f"{url}: FETCH_FAILED: HTTP 404 fetching {url}"]


# ---------------------------------------------------------------------------
# Search and answers
# ---------------------------------------------------------------------------


class TestSearchRoutes:
    async def _seed(self, app_state: AppState) -> None:
        url = "https://needhamma.gov/rts"
        await app_state.store.upsert_document(
            town_id="needham",
            source_id="needham:news",
            canonical_url=url,
            item=ContentItem(url=url, title="Transfer Station Hours", body="Open 7am to 3pm"),
            content_hash="seed",
            relevance_tier="primary",
        )

    async def test_search_defaults_town(
        self, client: httpx.AsyncClient, app_state: AppState
    ) -> None:
        await self._seed(app_state)

        response = await client.get("/api/search", params={"q": "transfer station hours"})

        assert response.status_code == 200
        body = response.json()
        assert body["town"] == "needham"
        assert [d["title"] for d in body["documents"]] == ["Transfer Station Hours"]

    async def test_search_requires_query(self, client: httpx.AsyncClient) -> None:
        for params in ({}, {"q": "   "}):
            response = await client.get("/api/search", params=params)
            assert response.status_code == 400
            assert response.json()["error"]["code"] == "INVALID_INPUT"

    async def test_answer(
        self, client: httpx.AsyncClient, app_state: AppState, generator: FakeGenerator
    ) -> None:
        await self._seed(app_state)

        first = await client.get("/api/answer", params={"q": "Transfer station hours?"})
        second = await client.get("/api/answer", params={"q": "transfer station hours"})

        assert first.status_code == second.status_code == 200
        assert first.json()["answer_html"] == "<p>Generated answer</p>"
        assert second.json()["hit_count"] == 1
        assert len(generator.prompts) == 1

    async def test_answer_without_generator_is_500(
        self, client: httpx.AsyncClient, app_state: AppState
    ) -> None:
        app_state.generator = None

        response = await client.get("/api/answer", params={"q": "library hours"})

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "CONFIG_ERROR"
