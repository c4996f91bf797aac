"""civichub command line: ``serve`` plus one-shot ``ingest`` and ``monitor`` runs.

One-shot commands print the same JSON summary the HTTP triggers return.
"""

from __future__ import annotations

import asyncio
import json
from typing import Annotated, Any

import typer

import civichub.handlers.ingest as h_ingest
import civichub.handlers.monitor as h_monitor
from civichub import __version__
from civichub.config import Settings
from civichub.errors import CivicHubError
from civichub.server import open_state, run_http_server, setup_logging

app = typer.Typer(
    name="civichub",
    help="Municipal information hub: ingestion, change monitoring and answer cache.",
    add_completion=False,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"civichub {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show version."),
    ] = False,
) -> None:
    """Municipal information hub backend."""


def _run_once(handler: Any, params: dict[str, Any], **kwargs: Any) -> None:
    settings = Settings()
    setup_logging(settings)

    async def _go() -> dict[str, Any]:
        async with open_state(settings) as state:
            return await handler(params, state, **kwargs)

    try:
        summary = asyncio.run(_go())
    except CivicHubError as exc:
        typer.echo(json.dumps(exc.to_dict(), indent=2), err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(json.dumps(summary, indent=2))


@app.command("serve")
def serve_cmd(
    host: Annotated[str | None, typer.Option("--host", help="Bind address.")] = None,
    port: Annotated[int | None, typer.Option("--port", help="Bind port.")] = None,
) -> None:
    """Serve the HTTP triggers and search API."""
    settings = Settings()
    if host is not None:
        settings.server.host = host
    if port is not None:
        settings.server.port = port
    run_http_server(settings)


@app.command("ingest")
def ingest_cmd(
    town: Annotated[str | None, typer.Option("--town", help="Only this town's sources.")] = None,
    schedule: Annotated[
        str | None, typer.Option("--schedule", help="Only sources on this cadence.")
    ] = None,
    force: Annotated[bool, typer.Option("--force", help="Run even if not due.")] = False,
    generate: Annotated[
        bool, typer.Option("--generate", help="Run content generation afterwards.")
    ] = False,
) -> None:
    """Run due connectors once and print the summary."""
    params: dict[str, Any] = {"force": force, "generate": generate}
    if town:
        params["town"] = town
    if schedule:
        params["schedule"] = schedule
    _run_once(h_ingest.handle, params)


@app.command("monitor")
def monitor_cmd(
    town: Annotated[str | None, typer.Option("--town", help="Town to check.")] = None,
) -> None:
    """Run change detection once and print the report."""
    _run_once(h_monitor.handle, {"town": town} if town else {}, trigger_source="cli")
