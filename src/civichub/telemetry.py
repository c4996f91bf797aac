"""Fire-and-forget search telemetry.

``emit`` schedules the write on the running loop and returns at once. The
caller's request never waits on, retries, or sees a failure from the write.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Literal

import structlog

if TYPE_CHECKING:
    from civichub.models.search import SearchTelemetry
    from civichub.store import Store

log = structlog.get_logger()

Confidence = Literal["high", "medium", "low"]

HIGH_CONFIDENCE = 0.75
MEDIUM_CONFIDENCE = 0.55


def confidence_for(top_similarity: float | None) -> Confidence:
    if top_similarity is None:
        return "low"
    if top_similarity >= HIGH_CONFIDENCE:
        return "high"
    if top_similarity >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


class TelemetrySink:
    def __init__(self, store: Store) -> None:
        self._store = store
        # Strong refs so pending writes are not garbage-collected mid-flight
        self._pending: set[asyncio.Task[None]] = set()

    def emit(self, event: SearchTelemetry) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._write(event))
        except RuntimeError:
            log.warning("telemetry_no_event_loop", query=event.query)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, event: SearchTelemetry) -> None:
        confidence = event.confidence or confidence_for(event.top_similarity)
        try:
            await self._store.insert_telemetry(event, confidence)
        except Exception:
            log.warning("telemetry_write_failed", query=event.query, town=event.town, exc_info=True)

    async def drain(self) -> None:
        """Wait for every write scheduled so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
