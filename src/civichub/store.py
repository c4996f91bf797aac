"""SQLite persistence for sources, documents and freshness state.

Unlike the answer cache, the store is a system of record: every
``aiosqlite.Error`` is re-raised as ``CivicHubError(PERSISTENCE_FAILED)`` so
the runner and monitor can record it against the one item it affected and
carry on with the rest of the batch.

Write ownership:
  - sources, documents, connector_runs     → connector runner
  - change_detection_state, reindex_requests → change monitor
  - documents.last_verified_at / is_stale    → change monitor
  - search_telemetry                        → telemetry sink
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog

from civichub.errors import CivicHubError, ErrorCode
from civichub.models.documents import Document, DocumentMatch
from civichub.models.monitor import ChangeDetectionState
from civichub.models.sources import Source

if TYPE_CHECKING:
    from civichub.models.documents import ContentItem, UpsertOutcome
    from civichub.models.search import SearchTelemetry
    from civichub.models.sources import ConnectorRunResult

log = structlog.get_logger()

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sources (
        id              TEXT PRIMARY KEY,
        town_id         TEXT NOT NULL,
        url             TEXT NOT NULL,
        type            TEXT NOT NULL,
        name            TEXT NOT NULL DEFAULT '',
        category        TEXT NOT NULL DEFAULT 'general',
        schedule        TEXT NOT NULL DEFAULT 'daily',
        priority        INTEGER NOT NULL DEFAULT 3 CHECK (priority BETWEEN 1 AND 5),
        max_depth       INTEGER NOT NULL DEFAULT 1,
        max_pages       INTEGER NOT NULL DEFAULT 20,
        is_active       INTEGER NOT NULL DEFAULT 1,
        config          TEXT NOT NULL DEFAULT '{}',
        last_success_at TEXT,
        last_attempt_at TEXT,
        error_count     INTEGER NOT NULL DEFAULT 0,
        last_error      TEXT,
        UNIQUE (town_id, url)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS documents (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        town_id          TEXT NOT NULL,
        source_id        TEXT NOT NULL,
        canonical_url    TEXT NOT NULL,
        url              TEXT NOT NULL,
        content_hash     TEXT NOT NULL,
        title            TEXT NOT NULL,
        body             TEXT NOT NULL,
        category         TEXT NOT NULL DEFAULT 'general',
        relevance_tier   TEXT NOT NULL DEFAULT 'primary',
        published_at     TEXT,
        fetched_at       TEXT NOT NULL,
        last_changed_at  TEXT NOT NULL,
        last_verified_at TEXT,
        is_stale         INTEGER NOT NULL DEFAULT 0,
        UNIQUE (town_id, canonical_url)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_tier ON documents(town_id, relevance_tier)",
    "CREATE INDEX IF NOT EXISTS idx_documents_verified ON documents(town_id, last_verified_at)",
    """
    CREATE TABLE IF NOT EXISTS connector_runs (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        connector_id     TEXT NOT NULL,
        town_id          TEXT NOT NULL,
        started_at       TEXT NOT NULL,
        items_found      INTEGER NOT NULL,
        items_upserted   INTEGER NOT NULL,
        items_skipped    INTEGER NOT NULL,
        errors           TEXT NOT NULL DEFAULT '[]',
        duration_ms      INTEGER NOT NULL,
        deadline_reached INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_runs_connector ON connector_runs(connector_id, started_at)",
    """
    CREATE TABLE IF NOT EXISTS change_detection_state (
        town_id         TEXT NOT NULL,
        url             TEXT NOT NULL,
        fetch_url       TEXT,
        last_hash       TEXT,
        last_checked_at TEXT,
        last_changed_at TEXT,
        status          TEXT NOT NULL,
        PRIMARY KEY (town_id, url)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reindex_requests (
        town_id       TEXT NOT NULL,
        canonical_url TEXT NOT NULL,
        source_id     TEXT,
        requested_at  TEXT NOT NULL,
        PRIMARY KEY (town_id, canonical_url)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS search_telemetry (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        query            TEXT NOT NULL,
        town             TEXT NOT NULL,
        tiers            TEXT NOT NULL DEFAULT '',
        result_count     INTEGER NOT NULL,
        top_similarity   REAL,
        avg_similarity   REAL,
        total_latency_ms INTEGER NOT NULL,
        had_ai_answer    INTEGER NOT NULL DEFAULT 0,
        cached           INTEGER NOT NULL DEFAULT 0,
        confidence       TEXT NOT NULL,
        created_at       TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ingestion_log (
        id                  INTEGER PRIMARY KEY AUTOINCREMENT,
        town_id             TEXT NOT NULL,
        action              TEXT NOT NULL,
        documents_processed INTEGER NOT NULL,
        errors              INTEGER NOT NULL,
        duration_ms         INTEGER NOT NULL,
        details             TEXT NOT NULL DEFAULT '{}',
        created_at          TEXT NOT NULL
    )
    """,
)

_DOCUMENT_COLUMNS = (
    "id, town_id, source_id, canonical_url, url, content_hash, title, body, "
    "category, relevance_tier, published_at, fetched_at, last_changed_at, "
    "last_verified_at, is_stale"
)

_STATE_COLUMNS = "town_id, url, fetch_url, last_hash, last_checked_at, last_changed_at, status"

_SOURCE_COLUMNS = (
    "id, town_id, url, type, name, category, schedule, priority, max_depth, max_pages, "
    "is_active, config, last_success_at, last_attempt_at, error_count, last_error"
)


def _now() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _persistence_error(operation: str, exc: aiosqlite.Error) -> CivicHubError:
    return CivicHubError(
        code=ErrorCode.PERSISTENCE_FAILED,
        message=f"{operation} failed: {exc}",
        recoverable=True,
    )


class Store:
    """SQLite-backed document store shared by the runner and the monitor."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db
        # Serialises read-modify-write sequences across concurrent connectors
        self._write_lock = asyncio.Lock()
        self._maintenance: dict[str, Callable[..., Awaitable[dict[str, int]]]] = {
            "cleanup_old_data": self._cleanup_old_data,
        }

    @property
    def db(self) -> aiosqlite.Connection:
        return self._db

    async def init_db(self) -> None:
        """Create tables and set WAL mode. Called once at startup."""
        await self._db.execute("PRAGMA journal_mode = WAL")
        for statement in _SCHEMA:
            await self._db.execute(statement)
        await self._db.commit()

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def upsert_source(self, source: Source) -> None:
        """Insert or update a source's configuration, keeping run bookkeeping."""
        try:
            await self._db.execute(
                "INSERT INTO sources (id, town_id, url, type, name, category, schedule, "
                "priority, max_depth, max_pages, is_active, config) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET town_id = excluded.town_id, "
                "url = excluded.url, type = excluded.type, name = excluded.name, "
                "category = excluded.category, schedule = excluded.schedule, "
                "priority = excluded.priority, max_depth = excluded.max_depth, "
                "max_pages = excluded.max_pages, is_active = excluded.is_active, "
                "config = excluded.config",
                (
                    source.id,
                    source.town_id,
                    source.url,
                    source.type,
                    source.name,
                    source.category,
                    source.schedule,
                    source.priority,
                    source.max_depth,
                    source.max_pages,
                    int(source.is_active),
                    json.dumps(source.config),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"upsert source {source.id}", exc) from exc

    async def sync_sources(self, sources: list[Source]) -> int:
        for source in sources:
            await self.upsert_source(source)
        log.info("sources_synced", count=len(sources))
        return len(sources)

    async def list_sources(
        self,
        *,
        town_id: str | None = None,
        schedule: str | None = None,
        active_only: bool = True,
    ) -> list[Source]:
        """Return sources ordered by priority (1 first), then id."""
        clauses: list[str] = []
        params: list[Any] = []
        if active_only:
            clauses.append("is_active = 1")
        if town_id is not None:
            clauses.append("town_id = ?")
            params.append(town_id)
        if schedule is not None:
            clauses.append("schedule = ?")
            params.append(schedule)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        try:
            cursor = await self._db.execute(
                f"SELECT {_SOURCE_COLUMNS} FROM sources {where} ORDER BY priority, id",
                params,
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise _persistence_error("list sources", exc) from exc
        return [self._source_from_row(row) for row in rows]

    async def get_source(self, source_id: str) -> Source | None:
        try:
            cursor = await self._db.execute(
                f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?", (source_id,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"get source {source_id}", exc) from exc
        return self._source_from_row(row) if row is not None else None

    async def record_source_run(
        self,
        source_id: str,
        *,
        attempted_at: datetime,
        succeeded: bool,
        error_message: str | None = None,
    ) -> None:
        """Update a source's scheduling bookkeeping after one connector run."""
        try:
            if succeeded:
                await self._db.execute(
                    "UPDATE sources SET last_attempt_at = ?, last_success_at = ?, "
                    "error_count = 0, last_error = NULL WHERE id = ?",
                    (attempted_at.isoformat(), attempted_at.isoformat(), source_id),
                )
            else:
                await self._db.execute(
                    "UPDATE sources SET last_attempt_at = ?, error_count = error_count + 1, "
                    "last_error = ? WHERE id = ?",
                    (attempted_at.isoformat(), error_message or "Unknown error", source_id),
                )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"record run for source {source_id}", exc) from exc

    async def record_connector_run(
        self, result: ConnectorRunResult, *, town_id: str, started_at: datetime
    ) -> None:
        try:
            await self._db.execute(
                "INSERT INTO connector_runs (connector_id, town_id, started_at, items_found, "
                "items_upserted, items_skipped, errors, duration_ms, deadline_reached) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    result.connector_id,
                    town_id,
                    started_at.isoformat(),
                    result.items_found,
                    result.items_upserted,
                    result.items_skipped,
                    json.dumps(result.errors),
                    result.duration_ms,
                    int(result.deadline_reached),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"record connector run {result.connector_id}", exc) from exc

    async def list_connector_runs(self, connector_id: str, limit: int = 20) -> list[dict]:
        """Most recent runs first."""
        try:
            cursor = await self._db.execute(
                "SELECT connector_id, started_at, items_found, items_upserted, items_skipped, "
                "errors, duration_ms, deadline_reached FROM connector_runs "
                "WHERE connector_id = ? ORDER BY id DESC LIMIT ?",
                (connector_id, limit),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"list runs for {connector_id}", exc) from exc
        return [
            {
                "connector_id": row[0],
                "started_at": row[1],
                "items_found": row[2],
                "items_upserted": row[3],
                "items_skipped": row[4],
                "errors": json.loads(row[5]),
                "duration_ms": row[6],
                "deadline_reached": bool(row[7]),
            }
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def upsert_document(
        self,
        *,
        town_id: str,
        source_id: str,
        canonical_url: str,
        item: ContentItem,
        content_hash: str,
        relevance_tier: str,
    ) -> UpsertOutcome:
        """Insert or update the document keyed by (town_id, canonical_url).

        Returns ``"unchanged"`` when the stored hash already matches; only
        ``fetched_at`` is touched in that case. A new hash moves
        ``last_changed_at`` forward.
        """
        now = _now().isoformat()
        async with self._write_lock:
            try:
                cursor = await self._db.execute(
                    "SELECT content_hash FROM documents WHERE town_id = ? AND canonical_url = ?",
                    (town_id, canonical_url),
                )
                row = await cursor.fetchone()

                if row is not None and row[0] == content_hash:
                    await self._db.execute(
                        "UPDATE documents SET fetched_at = ?, last_verified_at = ?, is_stale = 0 "
                        "WHERE town_id = ? AND canonical_url = ?",
                        (now, now, town_id, canonical_url),
                    )
                    await self._db.commit()
                    return "unchanged"

                await self._db.execute(
                    "INSERT INTO documents (town_id, source_id, canonical_url, url, content_hash, "
                    "title, body, category, relevance_tier, published_at, fetched_at, "
                    "last_changed_at, last_verified_at, is_stale) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0) "
                    "ON CONFLICT(town_id, canonical_url) DO UPDATE SET "
                    "source_id = excluded.source_id, url = excluded.url, "
                    "content_hash = excluded.content_hash, title = excluded.title, "
                    "body = excluded.body, category = excluded.category, "
                    "relevance_tier = excluded.relevance_tier, "
                    "published_at = excluded.published_at, fetched_at = excluded.fetched_at, "
                    "last_changed_at = excluded.last_changed_at, "
                    "last_verified_at = excluded.last_verified_at, is_stale = 0",
                    (
                        town_id,
                        source_id,
                        canonical_url,
                        item.url,
                        content_hash,
                        item.title,
                        item.body,
                        item.category,
                        relevance_tier,
                        _iso(item.published_at),
                        now,
                        now,
                        now,
                    ),
                )
                await self._db.commit()
            except aiosqlite.Error as exc:
                raise _persistence_error(f"upsert document {canonical_url}", exc) from exc

        return "created" if row is None else "updated"

    async def get_document(self, town_id: str, canonical_url: str) -> Document | None:
        try:
            cursor = await self._db.execute(
                f"SELECT {_DOCUMENT_COLUMNS} FROM documents "
                "WHERE town_id = ? AND canonical_url = ?",
                (town_id, canonical_url),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"get document {canonical_url}", exc) from exc
        return self._document_from_row(row) if row is not None else None

    async def list_document_urls(self, town_id: str) -> dict[str, str]:
        """Map each canonical URL of a town to the URL it was fetched from."""
        try:
            cursor = await self._db.execute(
                "SELECT canonical_url, url FROM documents WHERE town_id = ? ORDER BY canonical_url",
                (town_id,),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"list documents for {town_id}", exc) from exc
        return {row[0]: row[1] for row in rows}

    async def search_documents(
        self,
        town_id: str,
        terms: list[str],
        tiers: list[str],
        *,
        limit: int = 10,
        candidate_limit: int = 200,
    ) -> list[DocumentMatch]:
        """Term search over title and body, restricted to the given tiers.

        Score is the fraction of distinct query terms found in the document.
        """
        unique_terms = list(dict.fromkeys(t for t in terms if t))
        if not unique_terms or not tiers:
            return []

        tier_marks = ", ".join("?" for _ in tiers)
        term_clauses = " OR ".join("(title LIKE ? OR body LIKE ?)" for _ in unique_terms)
        params: list[Any] = [town_id, *tiers]
        for term in unique_terms:
            params.extend([f"%{term}%", f"%{term}%"])
        params.append(candidate_limit)

        try:
            cursor = await self._db.execute(
                f"SELECT {_DOCUMENT_COLUMNS} FROM documents "
                f"WHERE town_id = ? AND relevance_tier IN ({tier_marks}) AND ({term_clauses}) "
                "LIMIT ?",
                params,
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"search documents for {town_id}", exc) from exc

        matches: list[DocumentMatch] = []
        for row in rows:
            document = self._document_from_row(row)
            haystack = f"{document.title}\n{document.body}".lower()
            hits = sum(1 for term in unique_terms if term in haystack)
            matches.append(DocumentMatch(document=document, score=hits / len(unique_terms)))

        matches.sort(key=lambda m: (-m.score, m.document.id))
        return matches[:limit]

    async def last_content_change(self, town_id: str) -> datetime | None:
        """Latest change to any document or tracked page of a town."""
        try:
            cursor = await self._db.execute(
                "SELECT MAX(ts) FROM ("
                "SELECT MAX(last_changed_at) AS ts FROM documents WHERE town_id = ? "
                "UNION ALL "
                "SELECT MAX(last_changed_at) AS ts FROM change_detection_state WHERE town_id = ?"
                ")",
                (town_id, town_id),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"last content change for {town_id}", exc) from exc
        return _dt(row[0]) if row is not None else None

    async def mark_verified(self, town_id: str, canonical_url: str, verified_at: datetime) -> None:
        """Record that the live page was seen; clears the stale flag."""
        try:
            await self._db.execute(
                "UPDATE documents SET last_verified_at = ?, is_stale = 0 "
                "WHERE town_id = ? AND canonical_url = ?",
                (verified_at.isoformat(), town_id, canonical_url),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"mark verified {canonical_url}", exc) from exc

    async def flag_stale_documents(self, town_id: str, verified_before: datetime) -> int:
        """Flag documents of a town not verified since ``verified_before``.

        Documents never verified fall back to ``fetched_at``. Returns the
        number of newly flagged rows.
        """
        try:
            cursor = await self._db.execute(
                "UPDATE documents SET is_stale = 1 WHERE town_id = ? AND is_stale = 0 "
                "AND COALESCE(last_verified_at, fetched_at) < ?",
                (town_id, verified_before.isoformat()),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"flag stale documents for {town_id}", exc) from exc
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Change detection state
    # ------------------------------------------------------------------

    async def list_change_states(self, town_id: str) -> dict[str, ChangeDetectionState]:
        try:
            cursor = await self._db.execute(
                f"SELECT {_STATE_COLUMNS} FROM change_detection_state WHERE "
                " town_id = ?",
                (town_id,),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"list change states for {town_id}", exc) from exc
        return {row[1]: self._state_from_row(row) for row in rows}

    async def get_change_state(self, town_id: str, url: str) -> ChangeDetectionState | None:
        try:
            cursor = await self._db.execute(
                f"SELECT {_STATE_COLUMNS} FROM change_detection_state WHERE "
                " town_id = ? AND url = ?",
                (town_id, url),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"get change state {url}", exc) from exc
        return self._state_from_row(row) if row is not None else None

    async def save_change_state(self, state: ChangeDetectionState) -> None:
        try:
            await self._db.execute(
                f"INSERT OR REPLACE INTO change_detection_state ({_STATE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    state.town_id,
                    state.url,
                    state.fetch_url,
                    state.last_hash,
                    _iso(state.last_checked_at),
                    _iso(state.last_changed_at),
                    state.status,
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"save change state {state.url}", exc) from exc

    async def touch_change_state(self, town_id: str, url: str, checked_at: datetime) -> None:
        """Record an unchanged check: only ``last_checked_at`` and status move."""
        try:
            await self._db.execute(
                "UPDATE change_detection_state SET last_checked_at = ?, status = 'unchanged' "
                "WHERE town_id = ? AND url = ?",
                (checked_at.isoformat(), town_id, url),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"touch change state {url}", exc) from exc

    # ------------------------------------------------------------------
    # Reindex requests (monitor → runner)
    # ------------------------------------------------------------------

    async def request_reindex(self, town_id: str, canonical_url: str) -> bool:
        """File a reindex request for the source owning ``canonical_url``.

        Returns False without writing when no document owns the URL (a page
        only known from a discovery feed); no connector could consume it.
        """
        try:
            cursor = await self._db.execute(
                "INSERT OR REPLACE INTO reindex_requests "
                "(town_id, canonical_url, source_id, requested_at) "
                "SELECT town_id, canonical_url, source_id, ? FROM documents "
                "WHERE town_id = ? AND canonical_url = ?",
                (_now().isoformat(), town_id, canonical_url),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"request reindex {canonical_url}", exc) from exc
        return cursor.rowcount > 0

    async def pending_reindex_sources(self) -> set[str]:
        try:
            cursor = await self._db.execute(
                "SELECT DISTINCT source_id FROM reindex_requests WHERE source_id IS NOT NULL"
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise _persistence_error("list reindex requests", exc) from exc
        return {row[0] for row in rows}

    async def clear_reindex_requests(self, source_id: str) -> None:
        try:
            await self._db.execute("DELETE FROM reindex_requests WHERE source_id = ?", (source_id,))
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _persistence_error(f"clear reindex requests for {source_id}", exc) from exc

    # ------------------------------------------------------------------
    # Telemetry and run logs
    # ------------------------------------------------------------------

    async def insert_telemetry(self, event: SearchTelemetry, confidence: str) -> None:
        try:
            await self._db.execute(
                "INSERT INTO search_telemetry (query, town, tiers, result_count, top_similarity, "
                "avg_similarity, total_latency_ms, had_ai_answer, cached, confidence, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event.query,
                    event.town,
                    " ".join(event.tiers),
                    event.result_count,
                    event.top_similarity,
                    event.avg_similarity,
                    event.total_latency_ms,
                    int(event.had_ai_answer),
                    int(event.cached),
                    confidence,
                    _now().isoformat(),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _persistence_error("insert telemetry", exc) from exc

    async def log_ingestion(
        self,
        *,
        town_id: str,
        action: str,
        documents_processed: int,
        errors: int,
        duration_ms: int,
        details: dict[str, Any],
    ) -> None:
        try:
            await self._db.execute(
                "INSERT INTO ingestion_log (town_id, action, documents_processed, errors, "
                "duration_ms, details, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    town_id,
                    action,
                    documents_processed,
                    errors,
                    duration_ms,
                    json.dumps(details),
                    _now().isoformat(),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _persistence_error("write ingestion log", exc) from exc

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def execute_maintenance(self, name: str, **params: Any) -> dict[str, int]:
        """Run a named maintenance statement.

        Unknown names raise ``UNSUPPORTED_OPERATION``; there is no fallback
        path to probe.
        """
        operation = self._maintenance.get(name)
        if operation is None:
            raise CivicHubError(
                code=ErrorCode.UNSUPPORTED_OPERATION,
                message=f"Unknown maintenance statement: {name!r}. "
                f"Supported: [{', '.join(sorted(self._maintenance))}]",
            )
        return await operation(**params)

    async def _cleanup_old_data(self, retention_days: int = 30) -> dict[str, int]:
        cutoff = (_now() - timedelta(days=retention_days)).isoformat()
        deleted: dict[str, int] = {}
        try:
            for table, column in (
                ("connector_runs", "started_at"),
                ("search_telemetry", "created_at"),
                ("ingestion_log", "created_at"),
                ("reindex_requests", "requested_at"),
            ):
                cursor = await self._db.execute(
                    f"DELETE FROM {table} WHERE {column} < ?", (cutoff,)
                )
                deleted[table] = cursor.rowcount
            await self._db.commit()
        except aiosqlite.Error as exc:
            raise _persistence_error("cleanup_old_data", exc) from exc
        log.info("retention_cleanup_complete", retention_days=retention_days, **deleted)
        return deleted

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _source_from_row(row: Any) -> Source:
        return Source(
            id=row[0],
            town_id=row[1],
            url=row[2],
            type=row[3],
            name=row[4],
            category=row[5],
            schedule=row[6],
            priority=row[7],
            max_depth=row[8],
            max_pages=row[9],
            is_active=bool(row[10]),
            config=json.loads(row[11]),
            last_success_at=_dt(row[12]),
            last_attempt_at=_dt(row[13]),
            error_count=row[14],
            last_error=row[15],
        )

    @staticmethod
    def _document_from_row(row: Any) -> Document:
        return Document(
            id=row[0],
            town_id=row[1],
            source_id=row[2],
            canonical_url=row[3],
            url=row[4],
            content_hash=row[5],
            title=row[6],
            body=row[7],
            category=row[8],
            relevance_tier=row[9],
            published_at=_dt(row[10]),
            fetched_at=datetime.fromisoformat(row[11]),
            last_changed_at=datetime.fromisoformat(row[12]),
            last_verified_at=_dt(row[13]),
            is_stale=bool(row[14]),
        )

    @staticmethod
    def _state_from_row(row: Any) -> ChangeDetectionState:
        return ChangeDetectionState(
            town_id=row[0],
            url=row[1],
            fetch_url=row[2],
            last_hash=row[3],
            last_checked_at=_dt(row[4]),
            last_changed_at=_dt(row[5]),
            status=row[6],
        )
