"""Unit tests for civichub.store."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from civichub.errors import CivicHubError, ErrorCode
from civichub.models.documents import ContentItem
from civichub.models.monitor import ChangeDetectionState
from civichub.models.sources import Source

if TYPE_CHECKING:
    from civichub.store import Store


async def _upsert(
    store: Store,
    content_hash: str,
    *,
    body: str = "Open 7am to 3pm",
    url: str = "https://www.needhamma.gov/rts",
) -> str:
    return await store.upsert_document(
        town_id="needham",
        source_id="needham:news",
        canonical_url="https://needhamma.gov/rts",
        item=ContentItem(url=url, title="Transfer Station", body=body, category="services"),
        content_hash=content_hash,
        relevance_tier="primary",
    )


class TestDocuments:
    async def test_upsert_outcomes(self, store: Store) -> None:
        assert await _upsert(store, "h1") == "created"
        assert await _upsert(store, "h1") == "unchanged"
        assert await _upsert(store, "h2", body="Closed Monday") == "updated"

    async def test_one_row_per_canonical_url(self, store: Store) -> None:
        await _upsert(store, "h1", url="https://www.needhamma.gov/rts?utm_source=x")
        await _upsert(store, "h2", url="https://needhamma.gov/rts/")

        cursor = await store.db.execute("SELECT COUNT(*) FROM documents")
        row = await cursor.fetchone()
        assert row is not None
        assert row[0] == 1
        document = await store.get_document("needham", "https://needhamma.gov/rts")
        assert document is not None
        assert document.url == "https://needhamma.gov/rts/"

    async def test_unchanged_keeps_last_changed_at(self, store: Store) -> None:
        await _upsert(store, "h1")
        first = await store.get_document("needham", "https://needhamma.gov/rts")
        await _upsert(store, "h1")
        second = await store.get_document("needham", "https://needhamma.gov/rts")

        assert first is not None
        assert second is not None
        assert second.last_changed_at == first.last_changed_at
        assert second.fetched_at >= first.fetched_at

    async def test_last_content_change(self, store: Store) -> None:
        assert await store.last_content_change("needham") is None
        await _upsert(store, "h1")
        changed = await store.last_content_change("needham")
        assert changed is not None
        assert await store.last_content_change("dedham") is None

    async def test_list_document_urls(self, store: Store) -> None:
        await _upsert(store, "h1", url="https://www.needhamma.gov/RTS")
        assert await store.list_document_urls("needham") == {
            "https://needhamma.gov/rts": "https://www.needhamma.gov/RTS"
        }


class TestSearchDocuments:
    @pytest.fixture(autouse=True)
    async def _seed(self, store: Store) -> None:
        rows = [
            ("https://needhamma.gov/rts", "Transfer Station Hours", "Open 7am", "primary"),
            ("https://needhamma.gov/library", "Library Hours", "Open 9am to 5pm", "primary"),
            ("https://mass.gov/excise", "Motor Vehicle Excise", "State excise hours", "state"),
        ]
        for url, title, body, tier in rows:
            await store.upsert_document(
                town_id="needham",
                source_id="needham:news",
                canonical_url=url,
                item=ContentItem(url=url, title=title, body=body),
                content_hash=title,
                relevance_tier=tier,
            )

    async def test_ranks_by_matched_terms(self, store: Store) -> None:
        matches = await store.search_documents("needham", ["transfer", "hours"], ["primary"])
        assert [m.document.title for m in matches] == ["Transfer Station Hours", "Library Hours"]
        assert matches[0].score == 1.0
        assert matches[1].score == 0.5

    async def test_tier_restriction(self, store: Store) -> None:
        primary = await store.search_documents("needham", ["excise"], ["primary", "regional"])
        assert primary == []
        expanded = await store.search_documents("needham", ["excise"], ["primary", "state"])
        assert [m.document.title for m in expanded] == ["Motor Vehicle Excise"]

    async def test_no_terms(self, store: Store) -> None:
        assert await store.search_documents("needham", [], ["primary"]) == []


class TestSources:
    async def test_list_sources_orders_by_priority_then_id(self, store: Store) -> None:
        for source_id, priority in [("needham:b", 2), ("needham:c", 1), ("needham:a", 2)]:
            await store.upsert_source(
                Source(
                    id=source_id,
                    town_id="needham",
                    url=f"https://needhamma.gov/{source_id[-1]}",
                    type="rss",
                    priority=priority,
                )
            )
        sources = await store.list_sources()
        assert [s.id for s in sources] == ["needham:c", "needham:a", "needham:b"]

    async def test_resync_keeps_run_bookkeeping(self, store: Store, rss_source: Source) -> None:
        await store.upsert_source(rss_source)
        attempted = datetime.now(UTC)
        await store.record_source_run("needham:news", attempted_at=attempted, succeeded=True)

        await store.sync_sources([rss_source.model_copy(update={"priority": 4})])

        source = await store.get_source("needham:news")
        assert source is not None
        assert source.priority == 4
        assert source.last_success_at == attempted

    async def test_failed_runs_accumulate(self, store: Store, rss_source: Source) -> None:
        await store.upsert_source(rss_source)
        now = datetime.now(UTC)
        await store.record_source_run("needham:news", attempted_at=now, succeeded=False)
        await store.record_source_run(
            "needham:news", attempted_at=now, succeeded=False, error_message="FETCH_FAILED: x"
        )

        source = await store.get_source("needham:news")
        assert source is not None
        assert source.error_count == 2
        assert source.last_error == "FETCH_FAILED: x"

        await store.record_source_run("needham:news", attempted_at=now, succeeded=True)
        source = await store.get_source("needham:news")
        assert source is not None
        assert source.error_count == 0
        assert source.last_error is None


class TestChangeState:
    async def test_save_and_touch(self, store: Store) -> None:
        checked = datetime.now(UTC) - timedelta(hours=1)
        await store.save_change_state(
            ChangeDetectionState(
                town_id="needham",
                url="https://needhamma.gov/rts",
                last_hash="abc",
                last_checked_at=checked,
                last_changed_at=checked,
                status="changed",
            )
        )
        later = datetime.now(UTC)
        await store.touch_change_state("needham", "https://needhamma.gov/rts", later)

        state = await store.get_change_state("needham", "https://needhamma.gov/rts")
        assert state is not None
        assert state.status == "unchanged"
        assert state.last_checked_at == later
        assert state.last_changed_at == checked
        assert state.last_hash == "abc"

    async def test_fetch_url_is_kept(self, store: Store) -> None:
        await store.save_change_state(
            ChangeDetectionState(
                town_id="needham",
                url="https://needhamma.gov/transfer-station/hours",
                fetch_url="https://www.needhamma.gov/Transfer-Station/Hours?source=rss",
            )
        )

        state = await store.get_change_state(
            "needham", "https://needhamma.gov/transfer-station/hours"
        )
        assert state is not None
        assert state.fetch_url == "https://www.needhamma.gov/Transfer-Station/Hours?source=rss"
        assert state.last_hash is None


class TestReindexRequests:
    async def test_request_names_owning_source(self, store: Store) -> None:
        await _upsert(store, "h1")

        assert await store.request_reindex("needham", "https://needhamma.gov/rts") is True
        assert await store.pending_reindex_sources() == {"needham:news"}

        await store.clear_reindex_requests("needham:news")
        assert await store.pending_reindex_sources() == set()

    async def test_request_without_document_is_not_stored(self, store: Store) -> None:
        assert await store.request_reindex("needham", "https://needhamma.gov/unknown") is False

        cursor = await store.db.execute("SELECT COUNT(*) FROM reindex_requests")
        row = await cursor.fetchone()
        assert row is not None
        assert row[0] == 0


class TestVerification:
    async def test_mark_verified_clears_stale_flag(self, store: Store) -> None:
        await _upsert(store, "h1")
        cutoff = datetime.now(UTC) + timedelta(seconds=1)
        assert await store.flag_stale_documents("needham", cutoff) == 1
        document = await store.get_document("needham", "https://needhamma.gov/rts")
        assert document is not None
        assert document.is_stale is True

        verified = datetime.now(UTC) + timedelta(seconds=2)
        await store.mark_verified("needham", "https://needhamma.gov/rts", verified)

        document = await store.get_document("needham", "https://needhamma.gov/rts")
        assert document is not None
        assert document.is_stale is False
        assert document.last_verified_at == verified

    async def test_recently_verified_documents_are_not_flagged(self, store: Store) -> None:
        await _upsert(store, "h1")
        cutoff = datetime.now(UTC) - timedelta(days=90)

        assert await store.flag_stale_documents("needham", cutoff) == 0

    async def test_refetch_verifies_document(self, store: Store) -> None:
        await _upsert(store, "h1")
        await store.flag_stale_documents("needham", datetime.now(UTC) + timedelta(seconds=1))

        assert await _upsert(store, "h1") == "unchanged"

        document = await store.get_document("needham", "https://needhamma.gov/rts")
        assert document is not None
        assert document.is_stale is False
        assert document.last_verified_at is not None


class TestMaintenance:
    async def test_unknown_statement_is_unsupported(self, store: Store) -> None:
        with pytest.raises(CivicHubError) as exc_info:
            await store.execute_maintenance("vacuum_everything")
        assert exc_info.value.code == ErrorCode.UNSUPPORTED_OPERATION
        assert "cleanup_old_data" in exc_info.value.message

    async def test_cleanup_old_data(self, store: Store) -> None:
        old = (datetime.now(UTC) - timedelta(days=45)).isoformat()
        recent = datetime.now(UTC).isoformat()
        for created_at in (old, recent):
            await store.db.execute(
                "INSERT INTO ingestion_log (town_id, action, documents_processed, errors, "
                "duration_ms, details, created_at) VALUES ('needham', 'ingest', 0, 0, 0, '{}', ?)",
                (created_at,),
            )
        await store.db.commit()

        deleted = await store.execute_maintenance("cleanup_old_data", retention_days=30)

        assert deleted["ingestion_log"] == 1
        cursor = await store.db.execute("SELECT COUNT(*) FROM ingestion_log")
        row = await cursor.fetchone()
        assert row is not None
        assert row[0] == 1

    async def test_cleanup_drops_old_reindex_requests(self, store: Store) -> None:
        await _upsert(store, "h1")
        await store.request_reindex("needham", "https://needhamma.gov/rts")
        old = (datetime.now(UTC) - timedelta(days=45)).isoformat()
        await store.db.execute("UPDATE reindex_requests SET requested_at = ?", (old,))
        await store.db.commit()

        deleted = await store.execute_maintenance("cleanup_old_data", retention_days=30)

        assert deleted["reindex_requests"] == 1
        assert await store.pending_reindex_sources() == set()
