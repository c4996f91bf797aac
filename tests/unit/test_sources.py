"""Unit tests for civichub.sources.load_source_file."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from civichub.config import RunnerSettings
from civichub.errors import CivicHubError, ErrorCode
from civichub.sources import load_source_file

if TYPE_CHECKING:
    from pathlib import Path

NEWS = {
    "id": "needham:news",
    "town_id": "needham",
    "url": "https://www.needhamma.gov/news",
    "type": "rss",
    "schedule": "hourly",
    "priority": 1,
    "config": {"feedUrl": "https://www.needhamma.gov/rss.aspx?news"},
}


def _write(tmp_path: Path, payload: object) -> Path:
    path = tmp_path / "sources.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


class TestLoadSourceFile:
    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        assert load_source_file(tmp_path / "absent.json") == []

    def test_valid_file(self, tmp_path: Path) -> None:
        [source] = load_source_file(_write(tmp_path, [NEWS]))
        assert source.id == "needham:news"
        assert source.schedule == "hourly"
        assert source.config["feedUrl"].endswith("?news")

    def test_runner_defaults_fill_crawl_limits(self, tmp_path: Path) -> None:
        runner = RunnerSettings(default_max_pages=7, default_max_depth=2)
        explicit = {**NEWS, "id": "needham:site", "url": "https://needhamma.gov", "max_pages": 3}

        news, site = load_source_file(_write(tmp_path, [NEWS, explicit]), runner)

        assert (news.max_pages, news.max_depth) == (7, 2)
        assert (site.max_pages, site.max_depth) == (3, 2)

    def test_malformed_json(self, tmp_path: Path) -> None:
        path = tmp_path / "sources.json"
        path.write_text("[{", encoding="utf-8")
        with pytest.raises(CivicHubError) as exc_info:
            load_source_file(path)
        assert exc_info.value.code == ErrorCode.CONFIG_ERROR

    def test_not_a_list(self, tmp_path: Path) -> None:
        with pytest.raises(CivicHubError) as exc_info:
            load_source_file(_write(tmp_path, {"sources": [NEWS]}))
        assert exc_info.value.code == ErrorCode.CONFIG_ERROR

    def test_invalid_entry_names_index(self, tmp_path: Path) -> None:
        bad = {**NEWS, "id": "needham:bad", "url": "https://needhamma.gov/x", "schedule": "monthly"}
        with pytest.raises(CivicHubError) as exc_info:
            load_source_file(_write(tmp_path, [NEWS, bad]))
        assert exc_info.value.code == ErrorCode.CONFIG_ERROR
        assert "index 1" in exc_info.value.message

    def test_invalid_id(self, tmp_path: Path) -> None:
        with pytest.raises(CivicHubError):
            load_source_file(_write(tmp_path, [{**NEWS, "id": "Needham News"}]))

    def test_duplicate_town_and_url(self, tmp_path: Path) -> None:
        duplicate = {**NEWS, "id": "needham:news-2"}
        with pytest.raises(CivicHubError) as exc_info:
            load_source_file(_write(tmp_path, [NEWS, duplicate]))
        assert "Duplicate" in exc_info.value.message
