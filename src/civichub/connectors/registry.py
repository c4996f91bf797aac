"""Connector registry: maps source types to connector factories.

The registry is an explicit object built once at startup (see
``build_default_registry``) and passed to the runner. Nothing registers
itself at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from civichub.errors import CivicHubError, ErrorCode

if TYPE_CHECKING:
    from civichub.connectors.base import ConnectorContext, ConnectorFactory, SourceConnector
    from civichub.models.sources import Source


class ConnectorRegistry:
    """Lookup table of ``"type"`` or ``"type:subtype"`` → factory."""

    def __init__(self, factories: dict[str, ConnectorFactory] | None = None) -> None:
        self._factories: dict[str, ConnectorFactory] = dict(factories or {})

    def register(self, key: str, factory: ConnectorFactory) -> None:
        self._factories[key] = factory

    def keys(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, key: object) -> bool:
        return key in self._factories

    def create(self, source: Source, context: ConnectorContext) -> SourceConnector:
        """Instantiate the connector for a source.

        Lookup order:
          1. ``"{type}:{config.subtype}"`` (specialized)
          2. ``"{type}"`` (generic)

        Raises CivicHubError(CONFIG_ERROR) when neither key is registered.
        """
        subtype = source.config.get("subtype")
        if subtype:
            factory = self._factories.get(f"{source.type}:{subtype}")
            if factory is not None:
                return factory(source, context)

        factory = self._factories.get(source.type)
        if factory is None:
            detail = f" (subtype: {subtype!r})" if subtype else ""
            raise CivicHubError(
                code=ErrorCode.CONFIG_ERROR,
                message=f"No connector factory registered for type {source.type!r}{detail}. "
                f"Registered: [{', '.join(self.keys())}]",
            )
        return factory(source, context)
