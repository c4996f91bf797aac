"""Change detection for already-tracked pages.

Each run revisits the town's tracked URLs (documents plus existing
change-detection rows), hashes the normalized page text and classifies every
URL as new, changed, unchanged or error. Changed pages are handed back to
the runner as reindex requests. A discovery feed adds newly published pages
as ``new`` without fetching them, keeping the link as published for later
fetches. Documents whose page has not been seen for
``monitor.stale_after_days`` are flagged stale.

The run stops cooperatively before the wall-clock deadline; every URL's state
update is a single write, so a partial report never leaves half-updated rows.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from civichub.canonical import canonicalize, content_hash
from civichub.connectors.rss import parse_feed_links
from civichub.errors import CivicHubError, ItemError
from civichub.fetcher import RateLimiter
from civichub.models.monitor import ChangeDetectionReport, ChangeDetectionState

if TYPE_CHECKING:
    from civichub.answer_cache import AnswerCache
    from civichub.config import MonitorSettings
    from civichub.protocols import FetcherProtocol
    from civichub.store import Store

log = structlog.get_logger()


def rotation_slice(urls: list[str], buckets: int, day_of_year: int) -> list[str]:
    """Today's share of ``urls`` when checks are spread over ``buckets`` days."""
    if buckets <= 1 or not urls:
        return urls
    size = -(-len(urls) // buckets)
    start = (day_of_year % buckets) * size
    return urls[start : start + size]


class ChangeMonitor:
    def __init__(
        self,
        *,
        store: Store,
        fetcher: FetcherProtocol,
        settings: MonitorSettings,
        answer_cache: AnswerCache | None = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._settings = settings
        self._answer_cache = answer_cache
        self._limiter = RateLimiter(settings.request_delay_seconds)

    async def tracked_urls(
        self, town_id: str
    ) -> tuple[dict[str, str], dict[str, ChangeDetectionState]]:
        """Return (canonical URL -> fetch URL, existing states) for a town.

        A document's stored URL wins over the link a discovery feed published.
        """
        documents = await self._store.list_document_urls(town_id)
        states = await self._store.list_change_states(town_id)
        fetch_urls = {url: state.fetch_url or url for url, state in states.items()}
        fetch_urls.update(documents)
        return dict(sorted(fetch_urls.items())), states

    async def run_change_detection(
        self,
        town_id: str,
        trigger_source: str = "cli",
        *,
        deadline_seconds: float | None = None,
    ) -> ChangeDetectionReport:
        start = time.monotonic()
        budget = self._settings.deadline_seconds if deadline_seconds is None else deadline_seconds
        stop_at = start + budget - self._settings.deadline_margin_seconds
        report = ChangeDetectionReport(town_id=town_id)
        run_log = log.bind(town_id=town_id, trigger_source=trigger_source)

        fetch_urls, states = await self.tracked_urls(town_id)
        day_of_year = datetime.now(UTC).timetuple().tm_yday
        todays = rotation_slice(list(fetch_urls), self._settings.rotation_buckets, day_of_year)
        run_log.info("monitor_started", tracked=len(fetch_urls), scheduled=len(todays))

        for url in todays:
            if time.monotonic() >= stop_at:
                report.deadline_reached = True
                run_log.warning(
                    "monitor_deadline_reached",
                    checked=report.checked_urls,
                    remaining=len(todays) - report.checked_urls,
                )
                break
            await self._check_url(town_id, url, fetch_urls[url], states.get(url), report)
            report.checked_urls += 1

        if not report.deadline_reached:
            await self._discover(town_id, set(fetch_urls), report)

        await self._flag_stale(town_id, report)
        await self._maintenance()
        report.duration_ms = int((time.monotonic() - start) * 1000)
        await self._log_run(
            report, trigger_source, tracked=len(fetch_urls), bucket_size=len(todays)
        )

        run_log.info(
            "monitor_complete",
            checked=report.checked_urls,
            changed=len(report.changed_urls),
            new=len(report.new_urls),
            errors=len(report.errors),
            duration_ms=report.duration_ms,
            deadline_reached=report.deadline_reached,
        )
        return report

    async def _check_url(
        self,
        town_id: str,
        url: str,
        fetch_url: str,
        state: ChangeDetectionState | None,
        report: ChangeDetectionReport,
    ) -> None:
        now = datetime.now(UTC)
        try:
            await self._limiter.wait()
            new_hash = content_hash(await self._fetcher.fetch(fetch_url))

            if state is None:
                await self._store.save_change_state(
                    ChangeDetectionState(
                        town_id=town_id,
                        url=url,
                        fetch_url=fetch_url,
                        last_hash=new_hash,
                        last_checked_at=now,
                        last_changed_at=now,
                        status="new",
                    )
                )
                report.new_urls.append(url)
            elif state.last_hash is None:
                # First fetch of a feed discovery sets the baseline
                await self._store.save_change_state(
                    state.model_copy(
                        update={
                            "last_hash": new_hash,
                            "last_checked_at": now,
                            "status": "unchanged",
                        }
                    )
                )
            elif state.last_hash != new_hash:
                await self._store.save_change_state(
                    state.model_copy(
                        update={
                            "last_hash": new_hash,
                            "last_checked_at": now,
                            "last_changed_at": now,
                            "status": "changed",
                        }
                    )
                )
                if not await self._store.request_reindex(town_id, url):
                    log.debug("monitor_reindex_skipped", url=url, reason="no_document")
                report.changed_urls.append(url)
            else:
                await self._store.touch_change_state(town_id, url, now)
            await self._store.mark_verified(town_id, url, now)
        except CivicHubError as exc:
            log.warning("monitor_check_failed", url=url, code=exc.code, message=exc.message)
            report.errors.append(f"{url}: {ItemError.from_exception(exc)}")
        except Exception as exc:
            log.error("monitor_check_unexpected_error", url=url, exc_info=True)
            report.errors.append(f"{url}: UNEXPECTED: {exc}")

    async def _discover(self, town_id: str, known: set[str], report: ChangeDetectionReport) -> None:
        feed_url = self._settings.discovery_feeds.get(town_id)
        if not feed_url:
            return
        try:
            links = parse_feed_links(await self._fetcher.fetch(feed_url))
        except CivicHubError as exc:
            log.warning("monitor_discovery_failed", feed_url=feed_url, code=exc.code)
            report.errors.append(f"{feed_url}: {ItemError.from_exception(exc)}")
            return

        for link in links:
            url = canonicalize(link)
            if url in known:
                continue
            known.add(url)
            try:
                await self._store.save_change_state(
                    ChangeDetectionState(town_id=town_id, url=url, fetch_url=link, status="new")
                )
            except CivicHubError as exc:
                report.errors.append(f"{url}: {ItemError.from_exception(exc)}")
                continue
            report.new_urls.append(url)

        log.debug("monitor_discovery_complete", feed_url=feed_url, links=len(links))

    async def _flag_stale(self, town_id: str, report: ChangeDetectionReport) -> None:
        cutoff = datetime.now(UTC) - timedelta(days=self._settings.stale_after_days)
        try:
            report.stale_flagged = await self._store.flag_stale_documents(town_id, cutoff)
        except CivicHubError:
            log.warning("stale_flagging_failed", town_id=town_id, exc_info=True)
            return
        if report.stale_flagged:
            log.info("stale_documents_flagged", town_id=town_id, count=report.stale_flagged)

    async def _maintenance(self) -> None:
        try:
            await self._store.execute_maintenance(
                "cleanup_old_data", retention_days=self._settings.retention_days
            )
        except CivicHubError:
            log.warning("retention_cleanup_failed", exc_info=True)

        if self._answer_cache is not None:
            deleted = await self._answer_cache.cleanup_expired()
            log.info("cache_cleanup_complete", deleted=deleted)

    async def _log_run(
        self,
        report: ChangeDetectionReport,
        trigger_source: str,
        *,
        tracked: int,
        bucket_size: int,
    ) -> None:
        try:
            await self._store.log_ingestion(
                town_id=report.town_id,
                action="monitor",
                documents_processed=report.checked_urls,
                errors=len(report.errors),
                duration_ms=report.duration_ms,
                details={
                    "changed_urls": report.changed_urls,
                    "new_urls": report.new_urls,
                    "triggered_by": trigger_source,
                    "tracked_urls": tracked,
                    "scheduled_urls": bucket_size,
                    "deadline_reached": report.deadline_reached,
                    "stale_flagged": report.stale_flagged,
                },
            )
        except CivicHubError:
            log.warning("ingestion_log_failed", town_id=report.town_id, exc_info=True)
