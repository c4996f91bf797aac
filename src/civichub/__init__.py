"""civichub: ingestion, freshness and answer caching for a municipal information hub."""

from __future__ import annotations

import warnings
from importlib.metadata import PackageNotFoundError, version

_FALLBACK_VERSION = "0.0.0+unknown"


def _resolve_version() -> str:
    try:
        return version("civichub")
    except PackageNotFoundError:
        # Source checkout that was never installed
        warnings.warn(
            "Package metadata for 'civichub' not found; "
            f"using fallback version {_FALLBACK_VERSION!r}.",
            RuntimeWarning,
            stacklevel=3,
        )
        return _FALLBACK_VERSION


__version__ = _resolve_version()
