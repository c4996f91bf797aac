from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class AnswerSource(BaseModel):
    title: str
    url: str


class CacheEntry(BaseModel):
    """A memoized answer for one normalized query within a town."""

    town_id: str
    normalized_key: str
    original_query: str
    answer_html: str
    sources: list[AnswerSource] = []
    created_at: datetime
    expires_at: datetime
    hit_count: int = 0
    stale: bool = False


class ComputedAnswer(BaseModel):
    """What an answer computation hands back to the cache."""

    answer_html: str
    sources: list[AnswerSource] = []
