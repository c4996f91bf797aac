"""Unit tests for configuration loading."""

from __future__ import annotations

from typing import TYPE_CHECKING

import platformdirs
import pytest

from civichub.config import _DEFAULT_DATA_DIR, _DEFAULT_DB_PATH, Settings, StoreSettings

if TYPE_CHECKING:
    from pathlib import Path


class TestPlatformDefaults:
    """Config defaults live under the platform data directory."""

    def test_default_data_dir_matches_platformdirs(self) -> None:
        assert platformdirs.user_data_dir("civichub") == _DEFAULT_DATA_DIR

    def test_default_db_path_under_data_dir(self) -> None:
        assert _DEFAULT_DB_PATH.startswith(_DEFAULT_DATA_DIR)
        assert _DEFAULT_DB_PATH.endswith("civichub.db")
        assert StoreSettings().db_path == _DEFAULT_DB_PATH


class TestSettings:
    def test_defaults(self) -> None:
        settings = Settings()
        assert settings.runner.deadline_seconds < 300
        assert settings.monitor.deadline_seconds < 300
        assert settings.server.default_town == "needham"
        assert settings.tiers.domain_tiers["mass.gov"] == "state"

    def test_nested_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CIVICHUB__RUNNER__POOL_SIZE", "8")
        monkeypatch.setenv("CIVICHUB__SERVER__CRON_SECRET", "s3cret")
        settings = Settings()
        assert settings.runner.pool_size == 8
        assert settings.server.cron_secret == "s3cret"

    def test_constructor_args_win_over_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CIVICHUB__SERVER__PORT", "9090")
        settings = Settings(server={"port": 7070})
        assert settings.server.port == 7070

    def test_pool_size_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            Settings(runner={"pool_size": 0})

    def test_yaml_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        config = tmp_path / "civichub.yaml"
        config.write_text(
            "monitor:\n  rotation_buckets: 7\n  discovery_feeds:\n"
            "    needham: https://www.needhamma.gov/rss.aspx?new\n",
            encoding="utf-8",
        )
        monkeypatch.setitem(Settings.model_config, "yaml_file", str(config))

        settings = Settings()

        assert settings.monitor.rotation_buckets == 7
        assert settings.monitor.discovery_feeds == {
            "needham": "https://www.needhamma.gov/rss.aspx?new"
        }
