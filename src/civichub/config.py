"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (CIVICHUB__RUNNER__POOL_SIZE=8)
  2. civichub.yaml          (searched in cwd, then platform config dir)
  3. Hardcoded defaults

The config file is optional; every field has a default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("civichub")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "civichub.db")
_DEFAULT_SOURCES_PATH = str(Path(_DEFAULT_DATA_DIR) / "sources.json")


def _find_config_file() -> str | None:
    """Return the path of the first civichub.yaml found, or None."""
    candidates = [
        Path("civichub.yaml"),
        Path(platformdirs.user_config_dir("civichub")) / "civichub.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080
    # Empty string disables the bearer check on /api/cron/* routes
    cron_secret: str = ""
    # Town used when a request or CLI call names none
    default_town: str = "needham"


class StoreSettings(BaseModel):
    db_path: str = _DEFAULT_DB_PATH


class FetcherSettings(BaseModel):
    timeout_seconds: float = 30.0
    user_agent: str = "CivicHub/1.0"
    max_redirects: int = 3
    block_private_ips: bool = True


class RunnerSettings(BaseModel):
    pool_size: int = Field(default=4, ge=1)
    request_delay_seconds: float = 0.5
    # Hosting ceiling is 300s; leave room to write results
    deadline_seconds: float = 270.0
    default_max_pages: int = 20
    default_max_depth: int = 1


class MonitorSettings(BaseModel):
    # town id -> feed URL listing newly published pages
    discovery_feeds: dict[str, str] = {}
    deadline_seconds: float = 270.0
    deadline_margin_seconds: float = 15.0
    rotation_buckets: int = Field(default=1, ge=1)
    request_delay_seconds: float = 0.0
    retention_days: int = 30
    # documents whose page was not seen for this long are flagged stale
    stale_after_days: int = Field(default=90, ge=1)


class CacheSettings(BaseModel):
    ttl_days: float = 7.0
    claim_ttl_seconds: float = 120.0
    claim_poll_interval_seconds: float = 0.5


class TierSettings(BaseModel):
    # base domain -> relevance tier; unmatched domains are primary
    domain_tiers: dict[str, Literal["primary", "regional", "state"]] = {
        "mass.gov": "state",
        "mbta.com": "regional",
        "norfolkcountyma.gov": "regional",
    }


class SourcesSettings(BaseModel):
    path: str = _DEFAULT_SOURCES_PATH


class LoggingSettings(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: CIVICHUB__SERVER__PORT=9090
        env_prefix="CIVICHUB__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    store: StoreSettings = StoreSettings()
    fetcher: FetcherSettings = FetcherSettings()
    runner: RunnerSettings = RunnerSettings()
    monitor: MonitorSettings = MonitorSettings()
    cache: CacheSettings = CacheSettings()
    tiers: TierSettings = TierSettings()
    sources: SourcesSettings = SourcesSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
