from __future__ import annotations

from civichub.connectors.base import ConnectorContext, ConnectorFactory, SourceConnector
from civichub.connectors.ical import create_ical_connector
from civichub.connectors.registry import ConnectorRegistry
from civichub.connectors.rss import create_rss_connector
from civichub.connectors.scraper import create_scraper_connector

__all__ = [
    "ConnectorContext",
    "ConnectorFactory",
    "ConnectorRegistry",
    "SourceConnector",
    "build_default_registry",
]


def build_default_registry() -> ConnectorRegistry:
    """Registry with every built-in connector type. Called once at startup."""
    return ConnectorRegistry(
        {
            "rss": create_rss_connector,
            "ical": create_ical_connector,
            "scrape": create_scraper_connector,
        }
    )
