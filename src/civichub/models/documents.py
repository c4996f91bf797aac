from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel

UpsertOutcome = Literal["created", "updated", "unchanged"]


class ContentItem(BaseModel):
    """A normalized item produced by a connector, before persistence."""

    url: str
    title: str
    body: str
    category: str = "general"
    published_at: datetime | None = None
    metadata: dict[str, str] = {}


class Document(BaseModel):
    """An ingested content unit, unique per (town_id, canonical_url)."""

    id: int
    town_id: str
    source_id: str
    canonical_url: str
    url: str
    content_hash: str
    title: str
    body: str
    category: str
    relevance_tier: str
    published_at: datetime | None = None
    fetched_at: datetime
    last_changed_at: datetime
    last_verified_at: datetime | None = None
    is_stale: bool = False


class DocumentMatch(BaseModel):
    """A document returned by term search with its share of matched terms."""

    document: Document
    score: float
