"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Constructor arguments  (command-line flags, see CommandLine)
  2. Environment variables  (CRATEDOCS__CACHE__TTL_MS=7200000)
  3. Flat variables         (CACHE_TTL, MAX_CACHE_SIZE, REQUEST_TIMEOUT, DB_PATH)
  4. cratedocs.yaml         (searched in cwd, then the platform config dir)
  5. Hardcoded defaults

The config file is optional. All fields have defaults. A validation failure
here, or an unknown command-line flag, is the only error that stops the
server from starting.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import platformdirs
from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, PositiveInt
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from pydantic.fields import FieldInfo

# Sentinel db_path meaning "no durable backing".
MEMORY_DB_PATH = ":memory:"

_DEFAULT_CONFIG_DIR = platformdirs.user_config_dir("cratedocs")


def _find_config_file() -> str | None:
    """Return the path of the first cratedocs.yaml found, or None."""
    candidates = [
        Path("cratedocs.yaml"),
        Path(_DEFAULT_CONFIG_DIR) / "cratedocs.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ServerSettings(_Section):
    transport: Literal["stdio"] = "stdio"
    name: str = "cratedocs"


class CacheSettings(_Section):
    ttl_ms: PositiveInt = 3_600_000
    max_entries: PositiveInt = 100
    # ":memory:" or a path. A path ending in .db/.sqlite/.sqlite3 is the database
    # file; any other path is a directory that will hold cache.db.
    db_path: str = MEMORY_DB_PATH
    cleanup_interval_ms: PositiveInt = 600_000

    @property
    def durable(self) -> bool:
        return self.db_path != MEMORY_DB_PATH


class FetcherSettings(_Section):
    request_timeout_ms: PositiveInt = 30_000
    docs_base_url: str = "https://docs.rs"
    crates_io_url: str = "https://crates.io/api/v1"
    max_retries: NonNegativeInt = 2
    retry_backoff_ms: NonNegativeInt = 250
    # Response body as received, before zstd/gzip decoding
    max_download_bytes: PositiveInt = 64 * 1024 * 1024
    max_document_bytes: PositiveInt = 256 * 1024 * 1024
    user_agent: str = "cratedocs (+https://github.com/cratedocs/cratedocs)"


class LoggingSettings(_Section):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


# Flat names used by existing mcp-docsrs launch configurations.
_FLAT_ENV_VARS = {
    "CACHE_TTL": ("cache", "ttl_ms"),
    "MAX_CACHE_SIZE": ("cache", "max_entries"),
    "REQUEST_TIMEOUT": ("fetcher", "request_timeout_ms"),
    "DB_PATH": ("cache", "db_path"),
}


class FlatEnvSettingsSource(PydanticBaseSettingsSource):
    """Reads CACHE_TTL, MAX_CACHE_SIZE, REQUEST_TIMEOUT and DB_PATH."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for name, (section, field) in _FLAT_ENV_VARS.items():
            value = os.environ.get(name)
            if value:
                values.setdefault(section, {})[field] = value
        return values


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: CRATEDOCS__CACHE__MAX_ENTRIES=200
        env_prefix="CRATEDOCS__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
        frozen=True,
    )

    server: ServerSettings = ServerSettings()
    cache: CacheSettings = CacheSettings()
    fetcher: FetcherSettings = FetcherSettings()
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
            init_settings,
            env_settings,
            FlatEnvSettingsSource(settings_cls),
            YamlConfigSettingsSource(settings_cls),
        )


def resolve_db_file(db_path: str) -> Path:
    """Map a configured db_path to the SQLite file it designates."""
    path = Path(db_path).expanduser()
    if path.suffix in (".db", ".sqlite", ".sqlite3"):
        return path
    return path / "cache.db"


class CommandLine(BaseSettings):
    """Command-line flags. Each one overrides its setting from every other source."""

    model_config = SettingsConfigDict(
        cli_prog_name="cratedocs",
        cli_kebab_case=True,
        cli_implicit_flags=True,
        frozen=True,
    )

    cache_ttl: PositiveInt | None = Field(
        default=None, description="Cache TTL in milliseconds (default: 3600000)"
    )
    max_cache_size: PositiveInt | None = Field(
        default=None, description="Maximum number of cached entries (default: 100)"
    )
    request_timeout: PositiveInt | None = Field(
        default=None, description="Upstream request timeout in milliseconds (default: 30000)"
    )
    db_path: str | None = Field(
        default=None, description="Cache directory (cache.db is created inside) or ':memory:'"
    )
    stdio: bool = Field(default=False, description="Serve over stdio (the only transport)")
    version: bool = Field(default=False, description="Show version information and exit")

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
        # Flags only; Settings reads the environment.
        return (init_settings,)

    @classmethod
    def parse(cls, argv: Sequence[str] | None = None) -> CommandLine:
        """Parse ``argv`` (default ``sys.argv[1:]``). Exits on bad or unknown flags."""
        return cls(_cli_parse_args=True if argv is None else list(argv))

    def overrides(self) -> dict[str, dict[str, Any]]:
        """Nested ``Settings`` arguments for the flags that were given."""
        given = {
            ("cache", "ttl_ms"): self.cache_ttl,
            ("cache", "max_entries"): self.max_cache_size,
            ("fetcher", "request_timeout_ms"): self.request_timeout,
            ("cache", "db_path"): self.db_path,
        }
        values: dict[str, dict[str, Any]] = {}
        for (section, field), value in given.items():
            if value is not None:
                values.setdefault(section, {})[field] = value
        return values

