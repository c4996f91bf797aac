"""Connector execution engine.

Loads active sources, decides which are due, runs their connectors on a
bounded pool and upserts every item keyed by (town, canonical URL). One
broken page never stops its connector; one broken connector never stops
the batch. Every attempted connector yields exactly one ConnectorRunResult.
"""

from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from civichub.canonical import canonicalize, content_hash
from civichub.connectors.base import ConnectorContext
from civichub.errors import CivicHubError, ErrorCode, ItemError
from civichub.fetcher import RateLimiter
from civichub.models.sources import ConnectorRunResult
from civichub.tiers import classify_url_tier

if TYPE_CHECKING:
    from civichub.config import RunnerSettings, TierSettings
    from civichub.connectors.registry import ConnectorRegistry
    from civichub.models.documents import ContentItem
    from civichub.models.sources import Source
    from civichub.protocols import FetcherProtocol
    from civichub.store import Store

log = structlog.get_logger()


@dataclass(frozen=True)
class RunOptions:
    town_id: str | None = None
    schedule: str | None = None
    force: bool = False


def is_due(source: Source, now: datetime, *, reindex_requested: bool = False) -> bool:
    """True when the source's cadence has elapsed since its last successful run."""
    if reindex_requested or source.last_success_at is None:
        return True
    return now - source.last_success_at >= source.interval


class _Deadline:
    """Monotonic wall-clock budget shared by every connector in one run."""

    def __init__(self, seconds: float) -> None:
        self._expires = time.monotonic() + seconds

    @property
    def reached(self) -> bool:
        return time.monotonic() >= self._expires


class ConnectorRunner:
    def __init__(
        self,
        *,
        store: Store,
        registry: ConnectorRegistry,
        fetcher: FetcherProtocol,
        settings: RunnerSettings,
        tier_settings: TierSettings,
    ) -> None:
        self._store = store
        self._registry = registry
        self._fetcher = fetcher
        self._settings = settings
        self._domain_tiers: dict[str, str] = dict(tier_settings.domain_tiers)

    async def due_sources(self, options: RunOptions) -> list[Source]:
        """Active sources narrowed by the town/schedule filters, then due-checked."""
        sources = await self._store.list_sources(
            town_id=options.town_id, schedule=options.schedule
        )
        if options.force:
            return sources
        reindex = await self._store.pending_reindex_sources()
        now = datetime.now(UTC)
        return [s for s in sources if is_due(s, now, reindex_requested=s.id in reindex)]

    async def run(
        self, options: RunOptions | None = None, *, deadline_seconds: float | None = None
    ) -> list[ConnectorRunResult]:
        options = options or RunOptions()
        deadline = _Deadline(
            self._settings.deadline_seconds if deadline_seconds is None else deadline_seconds
        )
        sources = await self.due_sources(options)
        log.info(
            "runner_started",
            town_id=options.town_id,
            schedule=options.schedule,
            force=options.force,
            due=len(sources),
        )

        semaphore = asyncio.Semaphore(self._settings.pool_size)

        async def _bounded(source: Source) -> ConnectorRunResult | None:
            async with semaphore:
                if deadline.reached:
                    log.warning("runner_deadline_skip", connector=source.id)
                    return None
                return await self.run_source(source, deadline)

        outcomes = await asyncio.gather(*(_bounded(s) for s in sources))
        results = [r for r in outcomes if r is not None]

        log.info(
            "runner_complete",
            connectors_run=len(results),
            skipped_for_deadline=len(sources) - len(results),
            items_upserted=sum(r.items_upserted for r in results),
            items_skipped=sum(r.items_skipped for r in results),
            errors=sum(len(r.errors) for r in results),
        )
        return results

    async def run_source(self, source: Source, deadline: _Deadline) -> ConnectorRunResult:
        """Run one connector to completion. Never raises."""
        started_at = datetime.now(UTC)
        start = time.monotonic()
        result = ConnectorRunResult(connector_id=source.id)
        connector_log = log.bind(connector=source.id, town_id=source.town_id)

        try:
            context = ConnectorContext(
                fetcher=self._fetcher,
                limiter=RateLimiter(self._settings.request_delay_seconds),
            )
            connector = self._registry.create(source, context)
        except CivicHubError as exc:
            connector_log.warning("connector_config_error", code=exc.code, message=exc.message)
            result.errors.append(str(ItemError.from_exception(exc)))
        except Exception as exc:
            connector_log.warning("connector_config_error", exc_info=True)
            result.errors.append(str(ItemError(kind=ErrorCode.CONFIG_ERROR, message=str(exc))))
        else:
            try:
                async with aclosing(connector.collect()) as outcomes:
                    async for outcome in outcomes:
                        if isinstance(outcome, ItemError):
                            result.errors.append(str(outcome))
                        else:
                            result.items_found += 1
                            await self._upsert(source, outcome, result)
                        if deadline.reached:
                            result.deadline_reached = True
                            connector_log.warning("connector_deadline_reached")
                            break
            except Exception as exc:
                connector_log.error("connector_unexpected_error", exc_info=True)
                result.errors.append(f"UNEXPECTED: {exc}")

        result.duration_ms = int((time.monotonic() - start) * 1000)
        await self._record(source, result, started_at)
        connector_log.info(
            "connector_complete",
            items_found=result.items_found,
            items_upserted=result.items_upserted,
            items_skipped=result.items_skipped,
            errors=len(result.errors),
            duration_ms=result.duration_ms,
        )
        return result

    async def _upsert(self, source: Source, item: ContentItem, result: ConnectorRunResult) -> None:
        canonical_url = canonicalize(item.url)
        try:
            outcome = await self._store.upsert_document(
                town_id=source.town_id,
                source_id=source.id,
                canonical_url=canonical_url,
                item=item,
                content_hash=content_hash(f"{item.title}\n{item.body}"),
                relevance_tier=classify_url_tier(canonical_url, self._domain_tiers),
            )
        except CivicHubError as exc:
            result.errors.append(str(ItemError.from_exception(exc)))
            return

        if outcome == "unchanged":
            result.items_skipped += 1
        else:
            result.items_upserted += 1

    async def _record(
        self, source: Source, result: ConnectorRunResult, started_at: datetime
    ) -> None:
        """Persist run history and scheduling state. Failures are logged only."""
        try:
            await self._store.record_connector_run(
                result, town_id=source.town_id, started_at=started_at
            )
            await self._store.record_source_run(
                source.id,
                attempted_at=started_at,
                succeeded=result.succeeded,
                error_message="; ".join(result.errors) or None,
            )
            await self._store.clear_reindex_requests(source.id)
        except CivicHubError:
            log.warning("connector_record_failed", connector=source.id, exc_info=True)
