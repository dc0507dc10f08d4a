"""Tests for the command line interface."""

import asyncio
from datetime import date

import pytest
import toml
from click.testing import CliRunner

from tallycache import cli as cli_module
from tallycache.cache.keys import checkpoint_key, sales_complete_key
from tallycache.cache.progress import CheckpointStore
from tallycache.cache.store import HybridCache
from tallycache.cli import cli
from tallycache.config import CacheConfig


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.toml"
    with open(path, "w") as f:
        toml.dump(
            {
                "cache": {"root_dir": str(tmp_path / "cache"), "backend": "directory"},
                "api": {"base_url": "http://127.0.0.1:1"},
                "companies": [
                    {
                        "name": "Acme Traders",
                        "guid": "guid-a",
                        "location_id": "7",
                        "books_from": date.today().isoformat(),
                    }
                ],
            },
            f,
        )
    return str(path)


@pytest.fixture
def cache_config(tmp_path):
    return CacheConfig(root_dir=str(tmp_path / "cache"), backend="directory")


def seed(cache_config, work):
    async def runner():
        async with HybridCache.from_config(cache_config) as cache:
            await work(cache)

    asyncio.run(runner())


def invoke(config_file, *args, **kwargs):
    kwargs.setdefault("env", {"COLUMNS": "200"})
    return CliRunner().invoke(cli, ["--config", config_file, *args], **kwargs)


class TestConfigCommands:
    def test_show(self, config_file):
        result = invoke(config_file, "config", "show")
        assert result.exit_code == 0
        assert "Backend: directory" in result.output
        assert "Acme Traders (7/guid-a)" in result.output

    def test_invalid_config_file(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[cache]\nexpiry_days = -1\n")
        result = CliRunner().invoke(cli, ["--config", str(path), "config", "show"])
        assert result.exit_code == 1
        assert "Error initializing tallycache" in result.output


class TestCacheCommands:
    def test_status_empty(self, config_file):
        result = invoke(config_file, "cache", "status")
        assert result.exit_code == 0
        assert "Cache Status" in result.output
        assert "Entries" in result.output

    def test_list_and_show(self, config_file, cache_config, identity):
        async def work(cache):
            await cache.set(sales_complete_key(identity), {"vouchers": [{"mstid": "1"}]})
            await cache.set(checkpoint_key(identity), {"current": 0})

        seed(cache_config, work)

        result = invoke(config_file, "cache", "list", "--type", "sales")
        assert result.exit_code == 0
        assert sales_complete_key(identity) in result.output
        assert checkpoint_key(identity) not in result.output

        result = invoke(config_file, "cache", "show", sales_complete_key(identity))
        assert result.exit_code == 0
        assert '"mstid": "1"' in result.output

    def test_show_missing_key(self, config_file):
        result = invoke(config_file, "cache", "show", "nothing")
        assert result.exit_code == 1
        assert "No cache entry for key 'nothing'" in result.output

    def test_clear_requires_confirmation(self, config_file, cache_config):
        seed(cache_config, lambda cache: cache.set("k", {}))

        result = invoke(config_file, "cache", "clear", input="n\n")
        assert "Cancelled." in result.output

        result = invoke(config_file, "cache", "clear", "--yes")
        assert result.exit_code == 0
        assert "Cache cleared successfully." in result.output

    def test_clear_company(self, config_file, cache_config, identity, other_identity):
        async def work(cache):
            await cache.set(sales_complete_key(identity), {})
            await cache.set(sales_complete_key(other_identity), {})

        seed(cache_config, work)

        result = invoke(config_file, "cache", "clear", "--company", "acme traders", "--yes")
        assert result.exit_code == 0
        assert "Removed 1 entries for Acme Traders." in result.output

        result = invoke(config_file, "cache", "list")
        assert sales_complete_key(other_identity) in result.output

    def test_clear_unknown_company(self, config_file):
        result = invoke(config_file, "cache", "clear", "--company", "nobody", "--yes")
        assert result.exit_code == 1
        assert "Unknown company 'nobody'" in result.output

    def test_expire_disabled_by_default(self, config_file):
        result = invoke(config_file, "cache", "expire")
        assert result.exit_code == 0
        assert "Expiry is disabled" in result.output

    def test_expire_with_days(self, config_file):
        result = invoke(config_file, "cache", "expire", "--days", "3")
        assert result.exit_code == 0
        assert "Expired 0 entries." in result.output

    def test_set_expiry(self, config_file):
        result = invoke(config_file, "cache", "set-expiry", "45")
        assert result.exit_code == 0
        assert toml.load(config_file)["cache"]["expiry_days"] == 45
        assert toml.load(config_file)["cache"]["backend"] == "directory"

    def test_set_expiry_invalid(self, config_file):
        result = invoke(config_file, "cache", "set-expiry", "soon")
        assert result.exit_code == 1
        assert "Error setting cache expiry" in result.output


class TestSyncCommands:
    @pytest.fixture
    def patched_fetcher(self, monkeypatch, fake_fetcher):
        monkeypatch.setattr(cli_module, "SalesFetcher", lambda client, voucher_type=None: fake_fetcher)
        return fake_fetcher

    def test_run(self, config_file, cache_config, patched_fetcher, identity):
        result = invoke(config_file, "sync", "run", "Acme Traders")

        assert result.exit_code == 0, result.output
        assert "Sync complete!" in result.output
        assert "2 vouchers (download)" in result.output
        assert patched_fetcher.calls == [0]

        async def check(cache):
            complete = await cache.get_as_json(sales_complete_key(identity))
            assert len(complete["vouchers"]) == 2

        seed(cache_config, check)

    def test_run_failure_reports_remediation(self, config_file, patched_fetcher):
        patched_fetcher.fail_at = 0
        result = invoke(config_file, "sync", "run", "guid-a")
        assert result.exit_code == 1
        assert "HTTP 500" in result.output
        assert "resuming the download" in result.output

    def test_status_and_dismiss(self, config_file, cache_config, identity):
        async def work(cache):
            await CheckpointStore(cache).write_checkpoint(identity, 2, 5)

        seed(cache_config, work)

        result = invoke(config_file, "sync", "status")
        assert result.exit_code == 0
        assert "interrupted" in result.output
        assert "resume available" in result.output

        result = invoke(config_file, "sync", "dismiss", "Acme Traders")
        assert result.exit_code == 0
        assert "(2/5 chunks)" in result.output

        result = invoke(config_file, "sync", "dismiss", "Acme Traders")
        assert "No interrupted download to dismiss" in result.output

    def test_status_idle(self, config_file):
        result = invoke(config_file, "sync", "status", "Acme Traders")
        assert result.exit_code == 0
        assert "idle" in result.output

    def test_masters(self, config_file, patched_fetcher):
        result = invoke(config_file, "sync", "masters", "Acme Traders")
        assert result.exit_code == 0, result.output
        assert "2 customers, 1 stock items" in result.output
