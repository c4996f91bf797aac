"""HTTP server.

Responsibilities (and nothing more):
- Configure structlog
- Build AppState once per process (``open_state``)
- Route trigger, search and health requests to their handlers
- Guard ``/api/cron/*`` with the shared cron secret
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog
import uvicorn
from starlette.applications import Starlette
from starlette.datastructures import Headers
from starlette.middleware import Middleware
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

import civichub.handlers.ingest as h_ingest
import civichub.handlers.monitor as h_monitor
import civichub.handlers.search as h_search
from civichub import __version__
from civichub.answer_cache import AnswerCache
from civichub.connectors import build_default_registry
from civichub.errors import CivicHubError, ErrorCode
from civichub.fetcher import Fetcher, build_http_client
from civichub.sources import load_source_file
from civichub.state import AppState
from civichub.store import Store
from civichub.telemetry import TelemetrySink

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from starlette.requests import Request
    from starlette.types import ASGIApp, Receive, Scope, Send

    from civichub.config import Settings

    Handler = Callable[[dict[str, Any], AppState], Awaitable[dict[str, Any]]]

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer()]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # stdout carries CLI JSON output; logs stay on stderr
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# State lifecycle
# ---------------------------------------------------------------------------


@asynccontextmanager
async def open_state(settings: Settings) -> AsyncGenerator[AppState, None]:
    """Create and tear down all shared resources for one process."""
    db_path = Path(settings.store.db_path).expanduser()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    http_client = build_http_client(settings.fetcher)
    telemetry: TelemetrySink | None = None

    try:
        store = Store(db)
        await store.init_db()
        answer_cache = AnswerCache(store, settings.cache)
        await answer_cache.init_db()

        sources = load_source_file(Path(settings.sources.path).expanduser(), settings.runner)
        await store.sync_sources(sources)

        telemetry = TelemetrySink(store)
        state = AppState(
            settings=settings,
            store=store,
            registry=build_default_registry(),
            fetcher=Fetcher(http_client, settings.fetcher),
            answer_cache=answer_cache,
            telemetry=telemetry,
            http_client=http_client,
        )
        log.info(
            "state_ready",
            version=__version__,
            db_path=str(db_path),
            sources=len(sources),
            connector_types=state.registry.keys(),
        )
        yield state
    finally:
        if telemetry is not None:
            await telemetry.drain()
        await http_client.aclose()
        await db.close()
        log.info("state_closed")


# ---------------------------------------------------------------------------
# Cron secret
# ---------------------------------------------------------------------------


class CronAuthMiddleware:
    """Pure ASGI middleware requiring ``Authorization: Bearer <secret>`` on cron routes.

    An empty secret disables the check (local development).
    """

    def __init__(self, app: ASGIApp, *, cron_secret: str, path_prefix: str = "/api/cron/") -> None:
        self.app = app
        self.cron_secret = cron_secret
        self.path_prefix = path_prefix

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if (
            scope["type"] == "http"
            and self.cron_secret
            and scope["path"].startswith(self.path_prefix)
        ):
            auth_header = Headers(scope=scope).get("authorization", "")
            if auth_header != f"Bearer {self.cron_secret}":
                log.warning("cron_unauthorized", path=scope["path"])
                await JSONResponse({"error": "Unauthorized"}, status_code=401)(
                    scope, receive, send
                )
                return

        await self.app(scope, receive, send)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


def _timestamp() -> str:
    return datetime.now(UTC).isoformat()


async def _dispatch(request: Request, name: str, handler: Handler) -> Response:
    """Run one handler. Nothing raised here may take the process down."""
    state: AppState = request.app.state.civic
    params = {k: v for k, v in request.query_params.items() if v != ""}
    try:
        return JSONResponse(await handler(params, state))
    except CivicHubError as exc:
        log.warning(
            "handler_error",
            handler=name,
            code=exc.code,
            message=exc.message,
            recoverable=exc.recoverable,
        )
        status_code = 400 if exc.code == ErrorCode.INVALID_INPUT else 500
        body = exc.to_dict()
        body["timestamp"] = _timestamp()
        return JSONResponse(body, status_code=status_code)
    except Exception as exc:
        log.error("handler_unexpected_error", handler=name, exc_info=True)
        return JSONResponse({"error": str(exc), "timestamp": _timestamp()}, status_code=500)


async def cron_ingest(request: Request) -> Response:
    return await _dispatch(request, "ingest", h_ingest.handle)


async def cron_monitor(request: Request) -> Response:
    return await _dispatch(request, "monitor", h_monitor.handle)


async def search(request: Request) -> Response:
    return await _dispatch(request, "search", h_search.handle)


async def answer(request: Request) -> Response:
    return await _dispatch(request, "answer", h_search.handle_answer)


async def health(request: Request) -> Response:
    return JSONResponse({"status": "ok", "version": __version__, "timestamp": _timestamp()})


def create_app(settings: Settings, state: AppState | None = None) -> Starlette:
    """Build the ASGI app.

    With ``state`` given (tests) the app uses it as-is; otherwise the
    lifespan opens and closes a fresh AppState.
    """

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncGenerator[None, None]:
        if state is not None:
            yield
            return
        async with open_state(settings) as opened:
            app.state.civic = opened
            yield

    app = Starlette(
        routes=[
            Route("/api/cron/ingest", cron_ingest, methods=["GET"]),
            Route("/api/cron/monitor", cron_monitor, methods=["GET"]),
            Route("/api/search", search, methods=["GET"]),
            Route("/api/answer", answer, methods=["GET"]),
            Route("/api/health", health, methods=["GET"]),
        ],
        middleware=[Middleware(CronAuthMiddleware, cron_secret=settings.server.cron_secret)],
        lifespan=lifespan,
    )
    if state is not None:
        app.state.civic = state
    return app


def run_http_server(settings: Settings) -> None:
    """Serve the app with uvicorn until interrupted."""
    setup_logging(settings)
    http_log = log.bind(transport="http")
    if not settings.server.cron_secret:
        http_log.warning("cron_auth_disabled")

    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,  # structlog handles logging
    )
