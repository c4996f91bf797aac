"""Unit tests for civichub.telemetry."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from civichub.errors import CivicHubError, ErrorCode
from civichub.models.search import SearchTelemetry
from civichub.telemetry import TelemetrySink, confidence_for

if TYPE_CHECKING:
    from civichub.store import Store


def _event(**overrides: object) -> SearchTelemetry:
    fields: dict[str, object] = {
        "query": "transfer station hours",
        "town": "needham",
        "result_count": 3,
        "total_latency_ms": 12,
        "tiers": ["primary", "regional"],
        "top_similarity": 0.8,
        "avg_similarity": 0.6,
    }
    fields.update(overrides)
    return SearchTelemetry.model_validate(fields)


class BrokenStore:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc
        self.calls = 0

    async def insert_telemetry(self, event: SearchTelemetry, confidence: str) -> None:
        self.calls += 1
        raise self.exc


class TestConfidence:
    @pytest.mark.parametrize(
        ("top", "expected"),
        [
            (None, "low"),
            (0.2, "low"),
            (0.55, "medium"),
            (0.74, "medium"),
            (0.75, "high"),
            (1.0, "high"),
        ],
    )
    def test_thresholds(self, top: float | None, expected: str) -> None:
        assert confidence_for(top) == expected


class TestTelemetrySink:
    async def test_emit_writes_after_drain(self, store: Store) -> None:
        sink = TelemetrySink(store)
        sink.emit(_event())
        await sink.drain()

        cursor = await store.db.execute(
            "SELECT query, tiers, confidence, cached FROM search_telemetry"
        )
        rows = await cursor.fetchall()
        assert [tuple(r) for r in rows] == [
            ("transfer station hours", "primary regional", "high", 0)
        ]

    async def test_explicit_confidence_is_kept(self, store: Store) -> None:
        sink = TelemetrySink(store)
        sink.emit(_event(confidence="low"))
        await sink.drain()

        cursor = await store.db.execute("SELECT confidence FROM search_telemetry")
        row = await cursor.fetchone()
        assert row is not None
        assert row[0] == "low"

    @pytest.mark.parametrize(
        "exc",
        [
            CivicHubError(code=ErrorCode.PERSISTENCE_FAILED, message="disk full"),
            RuntimeError("unexpected"),
        ],
    )
    async def test_write_failure_is_swallowed(self, exc: Exception) -> None:
        broken = BrokenStore(exc)
        sink = TelemetrySink(broken)  # type: ignore[arg-type]

        sink.emit(_event())
        await sink.drain()

        assert broken.calls == 1

    async def test_drain_with_nothing_pending(self, store: Store) -> None:
        await TelemetrySink(store).drain()

    def test_emit_without_running_loop_is_dropped(self) -> None:
        broken = BrokenStore(RuntimeError("never called"))
        sink = TelemetrySink(broken)  # type: ignore[arg-type]

        sink.emit(_event())

        assert broken.calls == 0
