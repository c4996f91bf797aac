from __future__ import annotations

from civichub.models.cache import AnswerSource, CacheEntry, ComputedAnswer
from civichub.models.documents import ContentItem, Document, DocumentMatch, UpsertOutcome
from civichub.models.monitor import ChangeDetectionReport, ChangeDetectionState, ChangeStatus
from civichub.models.search import RelevanceTier, SearchTelemetry
from civichub.models.sources import (
    SCHEDULE_INTERVALS,
    ConnectorRunResult,
    ConnectorSchedule,
    Source,
)
from civichub.models.triggers import IngestInput, MonitorInput, SearchInput

__all__ = [
    # sources
    "Source",
    "ConnectorSchedule",
    "ConnectorRunResult",
    "SCHEDULE_INTERVALS",
    # documents
    "ContentItem",
    "Document",
    "DocumentMatch",
    "UpsertOutcome",
    # monitor
    "ChangeDetectionState",
    "ChangeDetectionReport",
    "ChangeStatus",
    # cache
    "AnswerSource",
    "CacheEntry",
    "ComputedAnswer",
    # search
    "RelevanceTier",
    "SearchTelemetry",
    # triggers
    "IngestInput",
    "MonitorInput",
    "SearchInput",
]
