"""Source configuration file loading.

The sources file is a JSON list of source objects. It is read at startup and
synced into the ``sources`` table; run bookkeeping columns in the table are
never overwritten by the file.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from civichub.errors import CivicHubError, ErrorCode
from civichub.models.sources import Source

if TYPE_CHECKING:
    from civichub.config import RunnerSettings

log = structlog.get_logger()


def load_source_file(path: Path, runner: RunnerSettings | None = None) -> list[Source]:
    """Parse and validate a sources file.

    A missing file yields an empty list. Malformed JSON or an invalid entry
    raises CivicHubError(CONFIG_ERROR) naming the offending entry.
    """
    if not path.is_file():
        log.info("sources_file_missing", path=str(path))
        return []

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise CivicHubError(
            code=ErrorCode.CONFIG_ERROR,
            message=f"Unreadable sources file {path}: {exc}",
        ) from exc

    if not isinstance(raw, list):
        raise CivicHubError(
            code=ErrorCode.CONFIG_ERROR,
            message=f"Sources file {path} must contain a JSON list",
        )

    sources: list[Source] = []
    seen: set[tuple[str, str]] = set()
    for index, entry in enumerate(raw):
        if isinstance(entry, dict) and runner is not None:
            entry.setdefault("max_pages", runner.default_max_pages)
            entry.setdefault("max_depth", runner.default_max_depth)
        try:
            source = Source.model_validate(entry)
        except ValidationError as exc:
            raise CivicHubError(
                code=ErrorCode.CONFIG_ERROR,
                message=f"Invalid source at index {index} in {path}: {exc}",
            ) from exc

        key = (source.town_id, source.url)
        if key in seen:
            raise CivicHubError(
                code=ErrorCode.CONFIG_ERROR,
                message=f"Duplicate source for town {source.town_id!r} and url {source.url!r}",
            )
        seen.add(key)
        sources.append(source)

    log.info("sources_file_loaded", path=str(path), count=len(sources))
    return sources
