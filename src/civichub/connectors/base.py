"""Connector interface.

A connector turns one configured Source into a stream of per-item results.
Each yielded value is either a ``ContentItem`` or an ``ItemError``; a
connector never raises for a single bad page or entry. The runner owns
canonicalization, hashing and persistence.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from civichub.errors import CivicHubError, ErrorCode, ItemError

if TYPE_CHECKING:
    from civichub.fetcher import RateLimiter
    from civichub.models.documents import ContentItem
    from civichub.models.sources import Source
    from civichub.protocols import FetcherProtocol


@dataclass
class ConnectorContext:
    """Shared collaborators handed to every connector factory."""

    fetcher: FetcherProtocol
    limiter: RateLimiter


class SourceConnector(ABC):
    """Base class for all connectors."""

    def __init__(self, source: Source, context: ConnectorContext) -> None:
        self.source = source
        self.context = context

    @property
    def id(self) -> str:
        return self.source.id

    async def fetch_page(self, url: str) -> str:
        """Fetch through the shared rate limiter."""
        await self.context.limiter.wait()
        return await self.context.fetcher.fetch(url)

    def require_config(self, key: str) -> str:
        value = self.source.config.get(key)
        if not isinstance(value, str) or not value:
            raise CivicHubError(
                code=ErrorCode.CONFIG_ERROR,
                message=f"{self.source.type} connector {self.source.id!r} "
                f"missing {key!r} in config",
            )
        return value

    @abstractmethod
    def collect(self) -> AsyncIterator[ContentItem | ItemError]:
        """Yield one result per fetched item, in source order."""
        ...


ConnectorFactory = Callable[["Source", ConnectorContext], SourceConnector]
