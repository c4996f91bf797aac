"""Normalized-key answer cache with at most one computation per key.

Like the document store, entries live in SQLite; unlike the store, every
``aiosqlite.Error`` is logged and degrades to a miss. A broken cache costs a
recomputation, never an answer.

Mutual exclusion per (town_id, normalized key) has two layers:
  - an in-process table of futures, so concurrent callers in one process
    wait for the leader instead of computing again;
  - a persisted claim row with an expiry, so several processes sharing the
    database do the same. A claim left behind by a crashed process expires
    after ``cache.claim_ttl_seconds`` and is then treated as a miss.

A leader that fails resolves its future with ``None``; waiters loop and the
first one to get there becomes the next leader.
"""

from __future__ import annotations

import asyncio
import json
import re
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import aiosqlite
import structlog

from civichub.errors import CivicHubError, ErrorCode
from civichub.models.cache import AnswerSource, CacheEntry, ComputedAnswer

if TYPE_CHECKING:
    from civichub.config import CacheSettings
    from civichub.store import Store

log = structlog.get_logger()

ComputeFn = Callable[[], Awaitable[ComputedAnswer]]

_CREATE_ANSWERS_TABLE = """
CREATE TABLE IF NOT EXISTS cached_answers (
    town_id          TEXT NOT NULL,
    normalized_query TEXT NOT NULL,
    original_query   TEXT NOT NULL,
    answer_html      TEXT NOT NULL,
    sources          TEXT NOT NULL DEFAULT '[]',
    created_at       TEXT NOT NULL,
    expires_at       TEXT NOT NULL,
    hit_count        INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (town_id, normalized_query)
)
"""

_CREATE_CLAIMS_TABLE = """
CREATE TABLE IF NOT EXISTS answer_claims (
    town_id          TEXT NOT NULL,
    normalized_query TEXT NOT NULL,
    owner            TEXT NOT NULL,
    expires_at       TEXT NOT NULL,
    PRIMARY KEY (town_id, normalized_query)
)
"""

_CREATE_EXPIRES_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_answers_expires ON cached_answers(expires_at)"
)

_PUNCTUATION = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """Lowercase, drop anything but letters/digits/whitespace, collapse spaces.

    "What are Transfer Station hours?" and "transfer  station hours" share a
    key. The empty string is a valid key.
    """
    stripped = _PUNCTUATION.sub("", query.lower())
    return _WHITESPACE.sub(" ", stripped).strip()


class AnswerCache:
    """SQLite-backed answer cache shared by every request in the process."""

    def __init__(self, store: Store, settings: CacheSettings) -> None:
        self._store = store
        self._db: aiosqlite.Connection = store.db
        self._ttl = timedelta(days=settings.ttl_days)
        self._claim_ttl = settings.claim_ttl_seconds
        self._poll_interval = settings.claim_poll_interval_seconds
        # Identifies this process's claims in the shared table
        self._owner = uuid.uuid4().hex
        self._inflight: dict[tuple[str, str], asyncio.Future[CacheEntry | None]] = {}

    async def init_db(self) -> None:
        await self._db.execute(_CREATE_ANSWERS_TABLE)
        await self._db.execute(_CREATE_CLAIMS_TABLE)
        await self._db.execute(_CREATE_EXPIRES_INDEX)
        await self._db.commit()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def lookup(self, town_id: str, normalized_key: str) -> CacheEntry | None:
        """Raw read with ``stale`` computed. Does not count a hit."""
        try:
            cursor = await self._db.execute(
                "SELECT town_id, normalized_query, original_query, answer_html, sources, "
                "created_at, expires_at, hit_count FROM cached_answers "
                "WHERE town_id = ? AND normalized_query = ?",
                (town_id, normalized_key),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error:
            log.warning("cache_read_error", key=f"{town_id}:{normalized_key}", exc_info=True)
            return None
        if row is None:
            return None

        entry = CacheEntry(
            town_id=row[0],
            normalized_key=row[1],
            original_query=row[2],
            answer_html=row[3],
            sources=[AnswerSource(**s) for s in json.loads(row[4])],
            created_at=datetime.fromisoformat(row[5]),
            expires_at=datetime.fromisoformat(row[6]),
            hit_count=row[7],
        )
        entry.stale = await self._changed_since(town_id, entry.created_at)
        return entry

    async def get(self, town_id: str, query: str) -> CacheEntry | None:
        """Fresh entry for the query, or ``None``. Expired and stale entries miss."""
        key = normalize_query(query)
        entry = await self.lookup(town_id, key)
        if entry is None:
            return None
        if entry.stale or datetime.now(UTC) >= entry.expires_at:
            log.debug("cache_stale_miss", town_id=town_id, key=key, stale=entry.stale)
            return None

        try:
            await self._db.execute(
                "UPDATE cached_answers SET hit_count = hit_count + 1 "
                "WHERE town_id = ? AND normalized_query = ?",
                (town_id, key),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_hit_count_error", key=f"{town_id}:{key}", exc_info=True)
        else:
            entry.hit_count += 1
        return entry

    async def _changed_since(self, town_id: str, created_at: datetime) -> bool:
        try:
            changed_at = await self._store.last_content_change(town_id)
        except CivicHubError:
            log.warning("cache_staleness_check_error", town_id=town_id, exc_info=True)
            return False
        return changed_at is not None and changed_at > created_at

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set(self, town_id: str, query: str, answer: ComputedAnswer) -> CacheEntry:
        """Store an answer. Returns the entry even when the write fails."""
        now = datetime.now(UTC)
        entry = CacheEntry(
            town_id=town_id,
            normalized_key=normalize_query(query),
            original_query=query.strip(),
            answer_html=answer.answer_html,
            sources=answer.sources,
            created_at=now,
            expires_at=now + self._ttl,
        )
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO cached_answers (town_id, normalized_query, "
                "original_query, answer_html, sources, created_at, expires_at, hit_count) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, 0)",
                (
                    entry.town_id,
                    entry.normalized_key,
                    entry.original_query,
                    entry.answer_html,
                    json.dumps([s.model_dump() for s in entry.sources]),
                    entry.created_at.isoformat(),
                    entry.expires_at.isoformat(),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_write_error", key=f"{town_id}:{entry.normalized_key}", exc_info=True)
        return entry

    async def cleanup_expired(self) -> int:
        """Delete expired answers and lapsed claims. Returns answers deleted."""
        now = datetime.now(UTC).isoformat()
        try:
            cursor = await self._db.execute(
                "DELETE FROM cached_answers WHERE expires_at < ?", (now,)
            )
            deleted = cursor.rowcount
            await self._db.execute("DELETE FROM answer_claims WHERE expires_at < ?", (now,))
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_cleanup_error", exc_info=True)
            return 0
        return deleted

    # ------------------------------------------------------------------
    # Single-flight computation
    # ------------------------------------------------------------------

    async def get_or_compute(self, town_id: str, query: str, compute: ComputeFn) -> CacheEntry:
        """Return the cached answer, computing it at most once concurrently.

        Exceptions from ``compute`` propagate to the leader's caller only;
        waiting callers retry.
        """
        key = normalize_query(query)
        slot = (town_id, key)

        while True:
            entry = await self.get(town_id, query)
            if entry is not None:
                return entry

            inflight = self._inflight.get(slot)
            if inflight is not None:
                try:
                    result = await asyncio.wait_for(asyncio.shield(inflight), self._claim_ttl)
                except TimeoutError:
                    log.warning(
                        "cache_claim_expired",
                        code=ErrorCode.CACHE_CLAIM_EXPIRED,
                        town_id=town_id,
                        key=key,
                        scope="process",
                    )
                    if self._inflight.get(slot) is inflight:
                        del self._inflight[slot]
                    continue
                if result is not None:
                    return result
                # Leader failed: next caller through becomes leader
                continue

            future: asyncio.Future[CacheEntry | None] = asyncio.get_running_loop().create_future()
            self._inflight[slot] = future
            computed: CacheEntry | None = None
            try:
                computed = await self._lead(town_id, query, key, compute)
            finally:
                if not future.done():
                    future.set_result(computed)
                if self._inflight.get(slot) is future:
                    del self._inflight[slot]
            if computed is not None:
                return computed

    async def _lead(
        self, town_id: str, query: str, key: str, compute: ComputeFn
    ) -> CacheEntry | None:
        """Compute under a persisted claim. ``None`` means retry from the top."""
        if not await self._claim(town_id, key):
            return await self._await_remote(town_id, query, key)

        try:
            log.debug("cache_compute_started", town_id=town_id, key=key)
            answer = await compute()
            return await self.set(town_id, query, answer)
        finally:
            await self._release(town_id, key)

    async def _await_remote(self, town_id: str, query: str, key: str) -> CacheEntry | None:
        """Poll while another process holds the claim."""
        while True:
            await asyncio.sleep(self._poll_interval)
            entry = await self.get(town_id, query)
            if entry is not None:
                return entry
            expires_at = await self._claim_expiry(town_id, key)
            if expires_at is None:
                # Released without an entry: the remote leader failed
                return None
            if datetime.now(UTC) >= expires_at:
                log.warning(
                    "cache_claim_expired",
                    code=ErrorCode.CACHE_CLAIM_EXPIRED,
                    town_id=town_id,
                    key=key,
                    scope="shared",
                )
                return None

    async def _claim(self, town_id: str, key: str) -> bool:
        """Take the shared claim if it is free or lapsed. Errors count as claimed."""
        now = datetime.now(UTC)
        expires_at = now + timedelta(seconds=self._claim_ttl)
        try:
            await self._db.execute(
                "INSERT INTO answer_claims (town_id, normalized_query, owner, expires_at) "
                "VALUES (?, ?, ?, ?) ON CONFLICT(town_id, normalized_query) DO UPDATE SET "
                "owner = excluded.owner, expires_at = excluded.expires_at "
                "WHERE answer_claims.expires_at <= ? OR answer_claims.owner = excluded.owner",
                (town_id, key, self._owner, expires_at.isoformat(), now.isoformat()),
            )
            await self._db.commit()
            cursor = await self._db.execute(
                "SELECT owner FROM answer_claims WHERE town_id = ? AND normalized_query = ?",
                (town_id, key),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error:
            log.warning("cache_claim_error", key=f"{town_id}:{key}", exc_info=True)
            return True
        return row is None or row[0] == self._owner

    async def _claim_expiry(self, town_id: str, key: str) -> datetime | None:
        try:
            cursor = await self._db.execute(
                "SELECT expires_at FROM answer_claims WHERE town_id = ? AND normalized_query = ?",
                (town_id, key),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error:
            log.warning("cache_claim_error", key=f"{town_id}:{key}", exc_info=True)
            return None
        return datetime.fromisoformat(row[0]) if row is not None else None

    async def _release(self, town_id: str, key: str) -> None:
        try:
            await self._db.execute(
                "DELETE FROM answer_claims "
                "WHERE town_id = ? AND normalized_query = ? AND owner = ?",
                (town_id, key, self._owner),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_release_error", key=f"{town_id}:{key}", exc_info=True)
