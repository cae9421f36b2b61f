"""商品目录同步单元测试。"""

import os
import sqlite3
import tempfile
from unittest.mock import MagicMock, patch

import pytest

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="catalog_sync_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import app.database as _db_mod
from app.database import get_db, init_db
from app.models.schemas import ProviderPackage
from app.services.catalog_sync import CatalogSynchronizer, format_volume
from app.services.esim_access_client import EsimAccessClient
from app.services.esim_provider import AllProvidersFailedError, ProviderError, ProviderGateway
from app.services.pricing import PricingPolicy


@pytest.fixture(autouse=True)
def _setup_db():
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS transactions;
        DROP TABLE IF EXISTS orders;
        DROP TABLE IF EXISTS products;
        DROP TABLE IF EXISTS users;
        DROP TABLE IF EXISTS loyalty_levels;
        DROP TABLE IF EXISTS system_config;
        DROP TABLE IF EXISTS admin;
    """)
    conn.close()
    init_db()
    yield


def _pkg(code="TR_1GB_7D", volume_kb=1048576, price=350, unlimited=False) -> ProviderPackage:
    return ProviderPackage(
        package_code=code,
        name=f"Package {code}",
        country="TR",
        volume_kb=volume_kb,
        validity_days=7,
        price_minor=price,
        is_unlimited=unlimited,
        provider="test",
    )


def _gateway(standard=None, unlimited=None) -> MagicMock:
    """按套餐档位返回不同结果的网关桩；值为异常时抛出。"""
    tiers = {"standard": standard or [], "unlimited": unlimited or []}

    def list_packages(country=None, data_type=None):
        value = tiers[data_type]
        if isinstance(value, Exception):
            raise value
        return list(value)

    gateway = MagicMock()
    gateway.list_packages.side_effect = list_packages
    return gateway


def _products() -> list:
    conn = get_db()
    rows = conn.execute("SELECT * FROM products ORDER BY id").fetchall()
    conn.close()
    return rows


def _failed(tier: str) -> AllProvidersFailedError:
    return AllProvidersFailedError(f"获取 {tier}", [ProviderError("test", "down")])


class TestFormatVolume:

    def test_one_gigabyte(self):
        assert format_volume(1048576) == "1 GB"

    def test_megabytes(self):
        assert format_volume(512000) == "500 MB"

    def test_large_volume(self):
        assert format_volume(20 * 1048576) == "20 GB"


class TestCatalogSync:

    def test_inserts_new_products(self):
        result = CatalogSynchronizer(_gateway(standard=[_pkg()]), PricingPolicy()).sync()

        assert result["success"] is True
        assert result["synced"] == 1
        assert result["errors"] == 0
        rows = _products()
        assert len(rows) == 1
        assert rows[0]["provider_id"] == "TR_1GB_7D"
        assert rows[0]["data_amount"] == "1 GB"
        assert rows[0]["price"] == 433
        assert rows[0]["is_active"] == 1

    def test_unlimited_tier_marked(self):
        CatalogSynchronizer(
            _gateway(unlimited=[_pkg("TR_UL_1D", unlimited=False)]), PricingPolicy()
        ).sync()
        assert _products()[0]["is_unlimited"] == 1

    def test_updates_existing_in_place(self):
        sync = CatalogSynchronizer(_gateway(standard=[_pkg(price=350)]), PricingPolicy())
        sync.sync()
        product_id = _products()[0]["id"]

        CatalogSynchronizer(_gateway(standard=[_pkg(price=500)]), PricingPolicy()).sync()

        rows = _products()
        assert len(rows) == 1
        assert rows[0]["id"] == product_id
        assert rows[0]["provider_price"] == 500
        assert rows[0]["price"] == 618

    def test_keeps_per_product_markup(self):
        CatalogSynchronizer(_gateway(standard=[_pkg(price=100)]), PricingPolicy()).sync()
        conn = get_db()
        conn.execute("UPDATE products SET markup_percent = 0")
        conn.commit()
        conn.close()

        CatalogSynchronizer(_gateway(standard=[_pkg(price=100)]), PricingPolicy()).sync()
        assert _products()[0]["price"] == 95

    def test_empty_result_keeps_existing_products(self):
        CatalogSynchronizer(_gateway(standard=[_pkg()]), PricingPolicy()).sync()

        result = CatalogSynchronizer(_gateway(), PricingPolicy()).sync()

        assert result["success"] is False
        assert result["synced"] == 0
        assert result["errors"] == 1
        rows = _products()
        assert len(rows) == 1
        assert rows[0]["is_active"] == 1

    def test_missing_from_batch_not_deactivated(self):
        CatalogSynchronizer(
            _gateway(standard=[_pkg("A"), _pkg("B")]), PricingPolicy()
        ).sync()
        CatalogSynchronizer(_gateway(standard=[_pkg("A")]), PricingPolicy()).sync()
        assert [r["is_active"] for r in _products()] == [1, 1]

    def test_one_tier_failure_continues(self):
        gateway = _gateway(standard=[_pkg()], unlimited=_failed("unlimited"))

        result = CatalogSynchronizer(gateway, PricingPolicy()).sync()

        assert result["success"] is True
        assert result["synced"] == 1
        assert result["errors"] == 1

    def test_all_tiers_failed(self):
        gateway = _gateway(standard=_failed("standard"), unlimited=_failed("unlimited"))
        result = CatalogSynchronizer(gateway, PricingPolicy()).sync()
        assert result == {
            "success": False,
            "synced": 0,
            "errors": 1,
            "message": result["message"],
        }

    @patch("app.services.esim_access_client.httpx.Client")
    def test_malformed_vendor_payload_is_tier_failure(self, mock_client_cls):
        http = MagicMock()
        http.__enter__.return_value = http
        http.__exit__.return_value = False
        response = MagicMock()
        response.raise_for_status.return_value = None
        response.json.return_value = {"success": True, "obj": [{"packageCode": "TR_1GB_7D"}]}
        http.post.return_value = response
        mock_client_cls.return_value = http
        first = CatalogSynchronizer(_gateway(standard=[_pkg("A")]), PricingPolicy()).sync()
        assert first["synced"] == 1

        gateway = ProviderGateway([EsimAccessClient("code", "secret")])
        result = CatalogSynchronizer(gateway, PricingPolicy()).sync()

        assert result["success"] is False
        assert result["synced"] == 0
        assert [r["provider_id"] for r in _products()] == ["A"]
