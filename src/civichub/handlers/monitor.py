"""Handler for the monitor trigger."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from civichub.errors import CivicHubError, ErrorCode
from civichub.models.triggers import MonitorInput
from civichub.monitor import ChangeMonitor

if TYPE_CHECKING:
    from civichub.state import AppState


async def handle(
    params: dict[str, Any], state: AppState, *, trigger_source: str = "cron"
) -> dict[str, Any]:
    try:
        validated = MonitorInput.model_validate(params)
    except ValueError as exc:
        raise CivicHubError(code=ErrorCode.INVALID_INPUT, message=str(exc)) from exc

    town_id = validated.town or state.settings.server.default_town
    log = structlog.get_logger().bind(trigger="monitor", town=town_id)
    log.info("handler_called", trigger_source=trigger_source)

    monitor = ChangeMonitor(
        store=state.store,
        fetcher=state.fetcher,
        settings=state.settings.monitor,
        answer_cache=state.answer_cache,
    )
    report = await monitor.run_change_detection(town_id, trigger_source)

    return {
        "status": "partial" if report.deadline_reached else "completed",
        "timestamp": datetime.now(UTC).isoformat(),
        "checked": report.checked_urls,
        "changed": len(report.changed_urls),
        "changedUrls": report.changed_urls,
        "newUrls": report.new_urls,
        "errors": report.errors,
        "staleFlagged": report.stale_flagged,
        "durationMs": report.duration_ms,
    }
