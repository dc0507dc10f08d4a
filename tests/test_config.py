"""Tests for configuration loading and updates."""

import logging
from datetime import date

import pytest
import toml
from pydantic import ValidationError

from tallycache.config import TOKEN_ENV_VAR, ApiConfig, CacheConfig, Config, ConfigManager
from tallycache.logging_setup import configure_logging


def write_config(path, data):
    with open(path, "w") as f:
        toml.dump(data, f)
    return str(path)


class TestCacheConfig:
    def test_defaults(self):
        config = CacheConfig()
        assert config.backend == "auto"
        assert config.expiry_days == "never"
        assert not config.expiry_enabled

    @pytest.mark.parametrize("value, expected", [(7, 7), ("30", 30), ("never", "never"), ("NEVER", "never"), (0, 0)])
    def test_expiry_values(self, value, expected):
        assert CacheConfig(expiry_days=value).expiry_days == expected

    @pytest.mark.parametrize("value", [-1, "soon", "-3"])
    def test_invalid_expiry(self, value):
        with pytest.raises(ValidationError):
            CacheConfig(expiry_days=value)

    def test_zero_disables_expiry(self):
        assert not CacheConfig(expiry_days=0).expiry_enabled
        assert CacheConfig(expiry_days=3).expiry_enabled

    def test_invalid_backend(self):
        with pytest.raises(ValidationError):
            CacheConfig(backend="s3")

    def test_db_path(self, tmp_path):
        config = CacheConfig(root_dir=str(tmp_path))
        assert config.db_path == str(tmp_path / "records.duckdb")
        assert CacheConfig(root_dir=str(tmp_path), db_file="/abs/db.duckdb").db_path == "/abs/db.duckdb"


class TestApiConfig:
    def test_base_url_trailing_slash(self):
        assert ApiConfig(base_url="https://api.example.com/").base_url == "https://api.example.com"

    def test_token_from_environment(self, monkeypatch):
        monkeypatch.setenv(TOKEN_ENV_VAR, "from-env")
        assert ApiConfig().resolved_token() == "from-env"
        assert ApiConfig(token="explicit").resolved_token() == "explicit"


class TestConfig:
    def test_find_company(self):
        config = Config(companies=[{"name": "Acme Traders", "guid": "guid-a", "location_id": "7"}])
        assert config.find_company("acme traders").guid == "guid-a"
        assert config.find_company("GUID-A").name == "Acme Traders"
        assert config.find_company("nobody") is None

    def test_company_identity(self):
        config = Config(companies=[{"name": "Acme", "guid": "g", "location_id": "7"}])
        identity = config.companies[0].identity()
        assert identity.tenant_key == ("7", "g")
        assert identity.company_name == "Acme"

    def test_books_from_precedence(self):
        config = Config(
            sync={"books_from": "20200401"},
            companies=[
                {"name": "A", "guid": "a", "location_id": "1", "books_from": "1-Apr-23"},
                {"name": "B", "guid": "b", "location_id": "1"},
            ],
        )
        assert config.books_from_for(config.companies[0]) == date(2023, 4, 1)
        assert config.books_from_for(config.companies[1]) == date(2020, 4, 1)

    def test_no_books_from(self):
        config = Config(companies=[{"name": "A", "guid": "a", "location_id": "1"}])
        assert config.books_from_for(config.companies[0]) is None


class TestConfigManager:
    def test_missing_file_gives_defaults(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "missing.toml"))
        assert manager.config.cache.backend == "auto"

    def test_load(self, tmp_path):
        path = write_config(
            tmp_path / "config.toml",
            {
                "cache": {"root_dir": str(tmp_path / "cache"), "expiry_days": 14},
                "api": {"base_url": "https://tally.example.com"},
                "sync": {"chunk_days": 5},
                "companies": [{"name": "Acme", "guid": "g", "location_id": "7"}],
            },
        )
        config = ConfigManager(path).config
        assert config.cache.expiry_days == 14
        assert config.api.base_url == "https://tally.example.com"
        assert config.sync.chunk_days == 5
        assert config.companies[0].name == "Acme"

    def test_invalid_file(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("[cache\nbroken")
        with pytest.raises(ValueError, match="Invalid configuration file"):
            ConfigManager(str(path)).config

    def test_invalid_values(self, tmp_path):
        path = write_config(tmp_path / "config.toml", {"cache": {"expiry_days": -4}})
        with pytest.raises(ValueError, match="Invalid configuration file"):
            ConfigManager(path).config

    def test_set_expiry_days_preserves_other_settings(self, tmp_path):
        path = write_config(
            tmp_path / "config.toml",
            {"cache": {"backend": "records"}, "api": {"base_url": "https://tally.example.com"}},
        )
        manager = ConfigManager(path)

        updated = manager.set_expiry_days("30")

        assert updated.cache.expiry_days == 30
        assert updated.cache.backend == "records"
        saved = toml.load(path)
        assert saved["cache"]["expiry_days"] == 30
        assert saved["api"]["base_url"] == "https://tally.example.com"

    def test_set_expiry_days_creates_file(self, tmp_path):
        path = tmp_path / "new" / "config.toml"
        manager = ConfigManager(str(path))
        assert manager.set_expiry_days("never").cache.expiry_days == "never"
        assert toml.load(str(path))["cache"]["expiry_days"] == "never"

    def test_set_expiry_days_rejects_invalid(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "config.toml"))
        with pytest.raises(ValidationError):
            manager.set_expiry_days("-2")
        assert not (tmp_path / "config.toml").exists()


class TestConfigureLogging:
    def test_reconfigure_replaces_handler(self):
        logger = configure_logging()
        configure_logging(verbose=True)
        ours = [h for h in logger.handlers if getattr(h, "_tallycache", False)]
        assert len(ours) == 1
        assert logger.level == logging.DEBUG
