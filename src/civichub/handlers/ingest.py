"""Handler for the ingest trigger.

Receives AppState, runs the due connectors and returns the summary dict.
No Starlette imports; server.py handles the HTTP wiring.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from civichub.errors import CivicHubError, ErrorCode
from civichub.models.triggers import IngestInput
from civichub.runner import ConnectorRunner, RunOptions

if TYPE_CHECKING:
    from civichub.models.sources import ConnectorRunResult
    from civichub.state import AppState


def result_summary(result: ConnectorRunResult) -> dict[str, Any]:
    return {
        "connectorId": result.connector_id,
        "itemsFound": result.items_found,
        "itemsUpserted": result.items_upserted,
        "itemsSkipped": result.items_skipped,
        "errors": result.errors,
        "durationMs": result.duration_ms,
        "deadlineReached": result.deadline_reached,
    }


async def handle(params: dict[str, Any], state: AppState) -> dict[str, Any]:
    """Run due connectors, optionally followed by content generation."""
    try:
        validated = IngestInput.model_validate(params)
    except ValueError as exc:
        raise CivicHubError(code=ErrorCode.INVALID_INPUT, message=str(exc)) from exc

    log = structlog.get_logger().bind(
        trigger="ingest", town=validated.town, schedule=validated.schedule
    )
    log.info("handler_called", force=validated.force, generate=validated.generate)
    start = time.monotonic()

    runner = ConnectorRunner(
        store=state.store,
        registry=state.registry,
        fetcher=state.fetcher,
        settings=state.settings.runner,
        tier_settings=state.settings.tiers,
    )
    results = await runner.run(
        RunOptions(town_id=validated.town, schedule=validated.schedule, force=validated.force)
    )

    summary: dict[str, Any] = {
        "timestamp": datetime.now(UTC).isoformat(),
        "connectorsRun": len(results),
        "totalItemsUpserted": sum(r.items_upserted for r in results),
        "totalItemsSkipped": sum(r.items_skipped for r in results),
        "totalErrors": sum(len(r.errors) for r in results),
        "results": [result_summary(r) for r in results],
    }

    if validated.generate:
        summary.update(await _generate(state, validated.town))

    try:
        await state.store.log_ingestion(
            town_id=validated.town or "*",
            action="ingest",
            documents_processed=summary["totalItemsUpserted"],
            errors=summary["totalErrors"],
            duration_ms=int((time.monotonic() - start) * 1000),
            details={"connectors_run": len(results), "force": validated.force},
        )
    except CivicHubError:
        log.warning("ingestion_log_failed", exc_info=True)

    log.info(
        "ingest_complete",
        connectors_run=summary["connectorsRun"],
        total_errors=summary["totalErrors"],
    )
    return summary


async def _generate(state: AppState, town_id: str | None) -> dict[str, Any]:
    if state.content_generator is None:
        return {
            "articlesGenerated": 0,
            "generationErrors": [f"{ErrorCode.CONFIG_ERROR}: no content generator configured"],
        }
    try:
        generated = await state.content_generator.generate_all(town_id)
    except Exception as exc:
        structlog.get_logger().warning("content_generation_failed", exc_info=True)
        return {"articlesGenerated": 0, "generationErrors": [str(exc)]}
    return {"articlesGenerated": generated, "generationErrors": []}
