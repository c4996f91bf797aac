from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel

ChangeStatus = Literal["new", "changed", "unchanged", "error"]


class ChangeDetectionState(BaseModel):
    """Freshness record for one tracked URL. Owned by the monitor."""

    town_id: str
    url: str  # canonical
    fetch_url: str | None = None  # link as published; None means fetch ``url``
    last_hash: str | None = None  # None until the first fetch of a feed discovery
    last_checked_at: datetime | None = None
    last_changed_at: datetime | None = None
    status: ChangeStatus = "new"


class ChangeDetectionReport(BaseModel):
    """Result of one monitor run. Partial when the deadline was reached."""

    town_id: str
    checked_urls: int = 0
    changed_urls: list[str] = []
    new_urls: list[str] = []
    errors: list[str] = []
    stale_flagged: int = 0
    duration_ms: int = 0
    deadline_reached: bool = False
