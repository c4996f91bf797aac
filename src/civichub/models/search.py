from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel


class RelevanceTier(StrEnum):
    """Search scope buckets, narrowest first."""

    PRIMARY = "primary"
    REGIONAL = "regional"
    STATE = "state"


class SearchTelemetry(BaseModel):
    """One search-quality record. Written fire-and-forget."""

    query: str
    town: str
    result_count: int
    total_latency_ms: int
    tiers: list[str] = []
    top_similarity: float | None = None
    avg_similarity: float | None = None
    had_ai_answer: bool = False
    cached: bool = False
    confidence: Literal["high", "medium", "low"] | None = None
