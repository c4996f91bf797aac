"""Protocol interfaces for swappable components.

AppState, connectors and the answer service reference these protocols, not
the concrete implementations. This allows:
- Tests to use lightweight in-memory fakes
- The excluded text-generation layer to be plugged in without code changes
"""

from __future__ import annotations

from typing import Protocol


class FetcherProtocol(Protocol):
    """Interface for the HTTP page fetcher."""

    async def fetch(self, url: str) -> str: ...


class TextGenerator(Protocol):
    """Opaque text-generation capability used to write answers."""

    async def generate(self, prompt: str) -> str: ...


class ContentGenerator(Protocol):
    """Downstream article/digest generation run after ingestion."""

    async def generate_all(self, town_id: str | None) -> int: ...
