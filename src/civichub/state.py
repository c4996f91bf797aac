"""Application state container.

AppState is created once (by the server lifespan or a one-shot CLI command,
see ``server.open_state``) and passed explicitly to every handler. Nothing
is registered at import time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

    from civichub.answer_cache import AnswerCache
    from civichub.config import Settings
    from civichub.connectors.registry import ConnectorRegistry
    from civichub.protocols import ContentGenerator, FetcherProtocol, TextGenerator
    from civichub.store import Store
    from civichub.telemetry import TelemetrySink


@dataclass
class AppState:
    """Holds all shared runtime state. Passed to every handler."""

    settings: Settings
    store: Store
    registry: ConnectorRegistry
    fetcher: FetcherProtocol
    answer_cache: AnswerCache
    telemetry: TelemetrySink
    http_client: httpx.AsyncClient | None = None

    # Optional collaborators supplied by the deployment
    generator: TextGenerator | None = None
    content_generator: ContentGenerator | None = None
