"""Integration test fixtures.

The ASGI app runs in-process over httpx's ASGI transport with the shared
in-memory AppState from tests/conftest.py, so no server or network is used.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import pytest

from civichub.server import create_app

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from civichub.config import Settings
    from civichub.state import AppState

CRON_SECRET = "s3cret-token"


def _client(settings: Settings, state: AppState) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.ASGITransport(app=create_app(settings, state)),
        base_url="http://localhost",
    )


@pytest.fixture()
async def client(settings: Settings, app_state: AppState) -> AsyncIterator[httpx.AsyncClient]:
    """Client for an app with cron auth disabled."""
    async with _client(settings, app_state) as http_client:
        yield http_client


@pytest.fixture()
async def secured_client(
    settings: Settings, app_state: AppState
) -> AsyncIterator[httpx.AsyncClient]:
    """Client for an app that requires the cron bearer secret."""
    settings.server.cron_secret = CRON_SECRET
    async with _client(settings, app_state) as http_client:
        yield http_client
