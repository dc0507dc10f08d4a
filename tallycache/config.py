"""Configuration management for tallycache."""

import os
from datetime import date
from typing import List, Optional, Union

import toml
from pydantic import BaseModel, Field, field_validator

from .models.sync import CompanyIdentity

TOKEN_ENV_VAR = "TALLYCACHE_API_TOKEN"


def default_cache_root() -> str:
    base = os.getenv("XDG_CACHE_HOME") or "~/.cache"
    return os.path.join(base, "tallycache")


class CacheConfig(BaseModel):
    """Configuration for the local cache."""

    root_dir: str = Field(default=default_cache_root())
    backend: str = Field(
        default="auto",
        pattern="^(auto|directory|records)$",
        description="Storage backend: directory, records (DuckDB) or auto-detect",
    )
    db_file: str = Field(
        default="records.duckdb",
        description="DuckDB file for the record backend, relative to root_dir",
    )
    expiry_days: Union[int, str] = Field(
        default="never",
        description="Delete entries older than this many days; 0 or 'never' disables expiry",
    )
    low_space_percent: int = Field(default=90, ge=1, le=100)
    read_retry_delay_ms: int = Field(default=50, ge=0, le=5000)
    watch_changes: bool = Field(
        default=False,
        description="Reload the cache index when another process changes it",
    )

    @field_validator("root_dir")
    @classmethod
    def expand_root_dir(cls, v):
        """Expand user paths and environment variables."""
        return os.path.expanduser(os.path.expandvars(v))

    @field_validator("expiry_days")
    @classmethod
    def check_expiry(cls, v):
        if isinstance(v, str):
            if v.strip().lower() == "never":
                return "never"
            if not v.strip().isdigit():
                raise ValueError("expiry_days must be a non-negative integer or 'never'")
            v = int(v.strip())
        if v < 0:
            raise ValueError("expiry_days must be a non-negative integer or 'never'")
        return v

    @property
    def db_path(self) -> str:
        if os.path.isabs(self.db_file):
            return self.db_file
        return os.path.join(self.root_dir, self.db_file)

    @property
    def expiry_enabled(self) -> bool:
        return self.expiry_days not in ("never", 0)


class ApiConfig(BaseModel):
    """Configuration for the remote data service."""

    base_url: str = Field(default="http://localhost:8080")
    token: Optional[str] = Field(default=None, description=f"Bearer token, or set {TOKEN_ENV_VAR}")
    timeout_seconds: int = Field(default=300, ge=1, le=3600)
    voucher_type_filter: Optional[str] = Field(
        default=None, description="Restrict sales extracts to one voucher type"
    )

    @field_validator("base_url")
    @classmethod
    def strip_slash(cls, v):
        return v.rstrip("/")

    def resolved_token(self) -> Optional[str]:
        return self.token or os.getenv(TOKEN_ENV_VAR)


class SyncConfig(BaseModel):
    """Configuration for chunked downloads."""

    chunk_days: int = Field(default=2, ge=1, le=366)
    books_from: Optional[str] = Field(
        default=None,
        description="Origin date used when a company does not declare its own",
    )


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    format: str = Field(default="%(asctime)s %(levelname)s %(name)s: %(message)s")

    @field_validator("level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return v.upper() if isinstance(v, str) else v


class CompanyConfig(BaseModel):
    """A company the CLI can sync, as declared in the config file."""

    name: str
    guid: str
    location_id: str
    books_from: Optional[str] = None

    def identity(self) -> CompanyIdentity:
        return CompanyIdentity(location_id=self.location_id, guid=self.guid, company_name=self.name)


class Config(BaseModel):
    """Main configuration class."""

    cache: CacheConfig = Field(default_factory=CacheConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    companies: List[CompanyConfig] = Field(default_factory=list)

    def find_company(self, name_or_guid: str) -> Optional[CompanyConfig]:
        """Resolve a configured company by guid or case-insensitive name."""
        needle = name_or_guid.strip().lower()
        for company in self.companies:
            if company.guid.lower() == needle or company.name.lower() == needle:
                return company
        return None

    def books_from_for(self, company: CompanyConfig) -> Optional[date]:
        from .sync.windows import parse_books_from

        raw = company.books_from or self.sync.books_from
        return parse_books_from(raw) if raw else None


class ConfigManager:
    """Manages configuration loading and access."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file. If None, searches standard locations.
        """
        self.config_path = config_path or self._find_config_file()
        self._config: Optional[Config] = None

    def _find_config_file(self) -> str:
        """Find configuration file in standard locations."""
        search_paths = [
            os.path.expanduser("~/.config/tallycache/config.toml"),
            "tallycache.toml",
            "config.toml",
        ]

        for path in search_paths:
            if os.path.exists(path):
                return path

        # Return default path even if it doesn't exist
        return search_paths[0]

    @property
    def config(self) -> Config:
        """Get configuration, loading if necessary."""
        if self._config is None:
            self._config = self._load_config()
        return self._config

    def _load_config(self) -> Config:
        """Load configuration from TOML file."""
        if not os.path.exists(self.config_path):
            return Config()

        try:
            with open(self.config_path, "r") as f:
                config_data = toml.load(f)
            return Config(**config_data)
        except (toml.TomlDecodeError, ValueError) as e:
            raise ValueError(f"Invalid configuration file {self.config_path}: {e}")

    def set_expiry_days(self, value: Union[int, str]) -> Config:
        """Persist a new ``cache.expiry_days`` value to the config file.

        Other settings in the file are preserved. The file and its directory
        are created if missing.

        Args:
            value: Non-negative number of days, or "never"

        Returns:
            The reloaded configuration
        """
        validated = CacheConfig(expiry_days=value).expiry_days

        data = {}
        if os.path.exists(self.config_path):
            try:
                with open(self.config_path, "r") as f:
                    data = toml.load(f)
            except toml.TomlDecodeError as e:
                raise ValueError(f"Invalid configuration file {self.config_path}: {e}")

        data.setdefault("cache", {})["expiry_days"] = validated

        directory = os.path.dirname(self.config_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.config_path, "w") as f:
            toml.dump(data, f)

        self.reload()
        return self.config

    def reload(self):
        """Reload configuration from disk on next access."""
        self._config = None


# Global configuration manager instance
config_manager = ConfigManager()
