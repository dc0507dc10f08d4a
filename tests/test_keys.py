"""Tests for cache key helpers."""

from datetime import date

from tallycache.cache import keys
from tallycache.models.cache import CacheType


class TestKeyConstruction:
    def test_sales_keys(self, identity):
        assert keys.sales_base_key(identity) == "sales_7_guid-a"
        assert (
            keys.sales_window_key(identity, date(2024, 1, 1), date(2024, 1, 2))
            == "sales_7_guid-a_2024-01-01_2024-01-02"
        )
        assert keys.sales_complete_key(identity) == "sales_7_guid-a_complete"

    def test_company_keys(self, identity):
        assert keys.customers_key(identity) == "ledgerlist-w-addrs_7_Acme Traders"
        assert keys.items_key(identity) == "stockitems_7_Acme Traders"
        assert keys.checkpoint_key(identity) == "download_progress_7_guid-a"

    def test_legacy_keys(self):
        assert keys.legacy_count_key("k") == "k_chunks"
        assert keys.legacy_fragment_key("k", 3) == "k_chunk_3"
        assert keys.legacy_base("k_chunks") == "k"
        assert keys.legacy_base("k_chunk_12") == "k"
        assert keys.legacy_base("k") == "k"


class TestKeyParsing:
    def test_parse_window(self):
        assert keys.parse_window("sales_7_g_2024-01-01_2024-01-02") == (date(2024, 1, 1), date(2024, 1, 2))
        assert keys.parse_window("sales_7_g_complete") is None
        assert keys.parse_window("sales_7_g_2024-13-01_2024-01-02") is None

    def test_base_key(self):
        assert keys.base_key("sales_7_g_2024-01-01_2024-01-02") == "sales_7_g"
        assert keys.base_key("sales_7_g_complete") == "sales_7_g_complete"

    def test_infer_type(self, identity):
        assert keys.infer_type("sales_7_g_complete") == CacheType.SALES
        assert keys.infer_type(keys.dashboard_key(identity, "summary")) == CacheType.DASHBOARD
        assert keys.infer_type(keys.customers_key(identity)) == CacheType.CUSTOMERS
        assert keys.infer_type(keys.items_key(identity)) == CacheType.ITEMS
        assert keys.infer_type(keys.checkpoint_key(identity)) == CacheType.SESSION


class TestCompanyOwnership:
    def test_belongs_to_company(self, identity, other_identity):
        assert keys.belongs_to_company(keys.sales_complete_key(identity), identity)
        assert keys.belongs_to_company(keys.dashboard_key(identity, "x"), identity)
        assert keys.belongs_to_company(keys.checkpoint_key(identity), identity)
        assert keys.belongs_to_company(keys.customers_key(identity), identity)
        assert not keys.belongs_to_company(keys.sales_complete_key(other_identity), identity)

    def test_same_name_other_location(self, identity):
        from tallycache.models.sync import CompanyIdentity

        elsewhere = CompanyIdentity(location_id="70", guid="guid-a", company_name="Acme Traders")
        assert not keys.belongs_to_company(keys.customers_key(elsewhere), identity)
        assert not keys.belongs_to_company(keys.sales_complete_key(elsewhere), identity)
