from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

ConnectorSchedule = Literal["5min", "15min", "hourly", "daily", "weekly"]

SCHEDULE_INTERVALS: dict[str, timedelta] = {
    "5min": timedelta(minutes=5),
    "15min": timedelta(minutes=15),
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
}


class Source(BaseModel):
    """A configured content origin, stored in the ``sources`` table."""

    id: str
    town_id: str
    url: str
    type: str  # registry key: "rss", "ical", "scrape", ...
    name: str = ""
    category: str = "general"
    schedule: ConnectorSchedule = "daily"
    priority: int = Field(default=3, ge=1, le=5)
    max_depth: int = Field(default=1, ge=0)
    max_pages: int = Field(default=20, ge=1)
    is_active: bool = True
    config: dict[str, Any] = {}

    # Run bookkeeping, written by the runner only
    last_success_at: datetime | None = None
    last_attempt_at: datetime | None = None
    error_count: int = 0
    last_error: str | None = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not re.match(r"^[a-z0-9][a-z0-9_:.-]*$", v):
            raise ValueError(f"Invalid source ID: {v!r}")
        return v

    @property
    def interval(self) -> timedelta:
        return SCHEDULE_INTERVALS[self.schedule]


class ConnectorRunResult(BaseModel):
    """Outcome of one connector execution. Always present, even on failure."""

    connector_id: str
    items_found: int = 0
    items_upserted: int = 0
    items_skipped: int = 0
    errors: list[str] = []
    duration_ms: int = 0
    deadline_reached: bool = False

    @property
    def succeeded(self) -> bool:
        """True when the run did useful work or hit no error at all."""
        return not self.errors or (self.items_upserted + self.items_skipped) > 0
