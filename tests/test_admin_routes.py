"""管理后台路由测试：仪表盘、用户、商品批量操作、订单、等级、设置、厂商。"""

import asyncio
import os
import sqlite3
import tempfile
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="admin_routes_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-admin-routes"
os.environ["ADMIN_EMAIL"] = "admin@esim-service.com"
os.environ["ADMIN_PASSWORD"] = "admin123"

import app.database as _db_mod
from app.database import get_db, init_db
from app.main import app
from app.models.schemas import ProviderBalance, ProviderPackage, PurchaseResult
from app.services.esim_provider import AllProvidersFailedError, ProviderError
from app.services.order_service import OrderService, mark_paid
from app.services.pricing import ExchangeRateError
from app.services.user_service import UserService


@pytest.fixture(autouse=True)
def _setup_db():
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    os.environ["ADMIN_EMAIL"] = "admin@esim-service.com"
    os.environ["ADMIN_PASSWORD"] = "admin123"
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


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def auth(client):
    resp = client.post("/v1/admin/auth/login", json={
        "email": "admin@esim-service.com", "password": "admin123",
    })
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def _create_product(provider_id="TR_1GB_7D", price=1490, provider_price=350, is_unlimited=0) -> int:
    conn = get_db()
    cursor = conn.execute(
        """INSERT INTO products (provider_id, country, name, data_amount, validity_days,
                                 provider_price, price, is_unlimited)
           VALUES (?, 'TR', 'Turkey 1GB', '1 GB', 7, ?, ?, ?)""",
        (provider_id, provider_price, price, is_unlimited),
    )
    conn.commit()
    product_id = cursor.lastrowid
    conn.close()
    return product_id


def _completed_order(user_id: int, product_id: int) -> dict:
    gateway = MagicMock()
    gateway.purchase.return_value = PurchaseResult(
        order_ref="B1", iccid="890001", qr_payload="LPA:1$x$y", activation_code="LPA:1$x$y",
    )
    svc = OrderService(gateway=gateway, notifier=MagicMock())
    order = svc.create_order(user_id, product_id)
    conn = get_db()
    mark_paid(conn, order["id"])
    conn.commit()
    conn.close()
    return svc.fulfill(order["id"])


class TestDashboard:

    def test_overview(self, client, auth):
        user = UserService().find_or_create(1)
        product_id = _create_product(price=1490)
        _completed_order(user["id"], product_id)
        OrderService(notifier=MagicMock()).create_order(user["id"], product_id)

        data = client.get("/v1/admin/dashboard", headers=auth).json()

        assert data["code"] == 1
        assert data["overview"]["users"] == 1
        assert data["overview"]["orders"] == 2
        assert data["overview"]["completed_orders"] == 1
        assert data["overview"]["conversion_rate"] == 50.0
        assert data["overview"]["revenue"] == 1490.0
        assert len(data["chart"]["labels"]) == 7
        assert data["chart"]["order_counts"][-1] == 2
        assert data["top_products"][0]["id"] == product_id
        assert data["top_countries"] == [{"country": "TR", "orders": 1}]


class TestUsers:

    def test_list_and_detail(self, client, auth):
        user = UserService().find_or_create(1, username="alice")
        listed = client.get("/v1/admin/users", headers=auth).json()
        assert listed["meta"]["total"] == 1
        detail = client.get(f"/v1/admin/users/{user['id']}", headers=auth).json()
        assert detail["user"]["username"] == "alice"
        assert client.get("/v1/admin/users/999", headers=auth).status_code == 404

    def test_adjust_bonus(self, client, auth):
        user = UserService().find_or_create(1)
        resp = client.post(f"/v1/admin/users/{user['id']}/bonus", json={"amount": "25.50"}, headers=auth)
        assert resp.json()["user"]["bonus_balance"] == "25.50"
        resp = client.post(f"/v1/admin/users/{user['id']}/bonus", json={"amount": "-100"}, headers=auth)
        assert resp.json()["code"] == -1


class TestProducts:

    def test_list_includes_inactive(self, client, auth):
        _create_product("A")
        inactive = _create_product("B")
        client.delete(f"/v1/admin/products/{inactive}", headers=auth)
        data = client.get("/v1/admin/products", headers=auth).json()
        assert data["meta"]["total"] == 2
        only_inactive = client.get("/v1/admin/products", params={"is_active": False}, headers=auth).json()
        assert [p["provider_id"] for p in only_inactive["data"]] == ["B"]

    def test_create_computes_price(self, client, auth):
        resp = client.post("/v1/admin/products", json={
            "provider_id": "DE_3GB_30D", "country": "DE", "name": "Germany 3GB",
            "data_amount": "3 GB", "validity_days": 30, "provider_price": 350,
        }, headers=auth)
        product = resp.json()["product"]
        assert product["price"] == 433
        assert product["is_active"] is True

    def test_create_duplicate(self, client, auth):
        _create_product("A")
        resp = client.post("/v1/admin/products", json={
            "provider_id": "A", "country": "TR", "name": "x", "data_amount": "1 GB",
            "validity_days": 7, "provider_price": 100,
        }, headers=auth)
        assert resp.json()["code"] == -1

    def test_update(self, client, auth):
        product_id = _create_product()
        resp = client.put(f"/v1/admin/products/{product_id}", json={"price": 999, "badge": "HIT"}, headers=auth)
        product = resp.json()["product"]
        assert product["price"] == 999
        assert product["badge"] == "HIT"
        assert client.put("/v1/admin/products/999", json={"price": 1}, headers=auth).status_code == 404

    def test_bulk_toggle(self, client, auth):
        ids = [_create_product("A"), _create_product("B"), _create_product("C")]
        resp = client.post("/v1/admin/products/bulk/toggle", json={"ids": ids[:2], "is_active": False}, headers=auth)
        assert resp.json()["updated"] == 2
        public = client.get("/v1/products").json()
        assert [p["id"] for p in public["data"]] == [ids[2]]

    def test_bulk_toggle_by_type(self, client, auth):
        _create_product("A")
        _create_product("U", is_unlimited=1)
        resp = client.post("/v1/admin/products/bulk/toggle-by-type",
                           json={"tariff_type": "unlimited", "is_active": False}, headers=auth)
        assert resp.json()["updated"] == 1
        bad = client.post("/v1/admin/products/bulk/toggle-by-type",
                          json={"tariff_type": "other", "is_active": False}, headers=auth)
        assert bad.json()["code"] == -1

    def test_bulk_badge(self, client, auth):
        ids = [_create_product("A"), _create_product("B")]
        resp = client.post("/v1/admin/products/bulk/badge",
                           json={"ids": ids, "badge": "NEW", "badge_color": "#ff0000"}, headers=auth)
        assert resp.json()["updated"] == 2
        assert client.get(f"/v1/products/{ids[0]}").json()["product"]["badge_color"] == "#ff0000"

    def test_bulk_markup(self, client, auth):
        product_id = _create_product(provider_price=350)
        resp = client.post("/v1/admin/products/bulk/markup",
                           json={"ids": [product_id], "markup_percent": 0}, headers=auth)
        assert resp.json()["updated"] == 1
        product = client.get(f"/v1/products/{product_id}").json()["product"]
        # 3.5 * 1.0 * 95 = 332.5 → 333
        assert product["price"] == 333
        assert product["markup_percent"] == 0


class TestOrders:

    def test_list_and_filter(self, client, auth):
        user = UserService().find_or_create(1)
        product_id = _create_product()
        _completed_order(user["id"], product_id)
        OrderService(notifier=MagicMock()).create_order(user["id"], product_id)

        data = client.get("/v1/admin/orders", params={"status": "COMPLETED"}, headers=auth).json()
        assert data["meta"]["total"] == 1
        assert data["data"][0]["user"]["telegram_id"] == 1
        assert client.get("/v1/admin/orders", params={"status": "X"}, headers=auth).json()["code"] == -1

    def test_cancel_and_refund(self, client, auth):
        user = UserService().find_or_create(1)
        product_id = _create_product()
        pending = OrderService(notifier=MagicMock()).create_order(user["id"], product_id)
        completed = _completed_order(user["id"], product_id)

        resp = client.post(f"/v1/admin/orders/{pending['id']}/cancel", headers=auth).json()
        assert resp["order"]["status"] == "CANCELLED"
        again = client.post(f"/v1/admin/orders/{pending['id']}/cancel", headers=auth).json()
        assert again["code"] == -1

        refund = client.post(f"/v1/admin/orders/{completed['id']}/refund",
                             json={"reason": "не работает"}, headers=auth).json()
        assert refund["order"]["status"] == "REFUNDED"

        assert client.post("/v1/admin/orders/999/cancel", headers=auth).status_code == 404

    def test_manual_fulfill_requires_paid(self, client, auth):
        user = UserService().find_or_create(1)
        product_id = _create_product()
        pending = OrderService(notifier=MagicMock()).create_order(user["id"], product_id)
        resp = client.post(f"/v1/admin/orders/{pending['id']}/fulfill", headers=auth).json()
        assert resp["code"] == -1

    def test_export_csv(self, client, auth):
        user = UserService().find_or_create(1)
        product_id = _create_product()
        _completed_order(user["id"], product_id)
        resp = client.get("/v1/admin/orders/export", headers=auth)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/csv")
        lines = resp.text.strip().splitlines()
        assert len(lines) == 2
        assert "1490.00" in lines[1]

    def test_transactions(self, client, auth):
        user = UserService().find_or_create(1)
        product_id = _create_product()
        _completed_order(user["id"], product_id)
        data = client.get("/v1/admin/transactions", headers=auth).json()
        assert data["code"] == 1
        assert client.get("/v1/admin/transactions", params={"type": "X"}, headers=auth).json()["code"] == -1


class TestLoyaltyAdmin:

    def test_level_crud(self, client, auth):
        created = client.post("/v1/admin/loyalty/levels", json={
            "name": "Gold", "min_spent": "15000", "cashback_percent": 5, "discount_percent": 10,
        }, headers=auth).json()
        level_id = created["level"]["id"]
        assert created["level"]["min_spent"] == "15000.00"

        updated = client.put(f"/v1/admin/loyalty/levels/{level_id}",
                             json={"cashback_percent": 7}, headers=auth).json()
        assert updated["level"]["cashback_percent"] == 7.0

        user = UserService().find_or_create(1)
        conn = get_db()
        conn.execute("UPDATE users SET loyalty_level_id = ? WHERE id = ?", (level_id, user["id"]))
        conn.commit()
        conn.close()
        users = client.get(f"/v1/admin/loyalty/levels/{level_id}/users", headers=auth).json()["users"]
        assert [u["id"] for u in users] == [user["id"]]

        deleted = client.delete(f"/v1/admin/loyalty/levels/{level_id}", headers=auth).json()
        assert deleted["affected_users"] == 1
        assert client.delete(f"/v1/admin/loyalty/levels/{level_id}", headers=auth).status_code == 404

    def test_invalid_percent(self, client, auth):
        resp = client.post("/v1/admin/loyalty/levels", json={
            "name": "Bad", "min_spent": "0", "cashback_percent": 150,
        }, headers=auth)
        assert resp.json()["code"] == -1


class TestSettings:

    def test_pricing(self, client, auth):
        data = client.get("/v1/admin/settings/pricing", headers=auth).json()
        assert data["exchangeRate"] == 95.0
        updated = client.put("/v1/admin/settings/pricing", json={"markup_percent": 40}, headers=auth).json()
        assert updated["markupPercent"] == 40.0
        bad = client.put("/v1/admin/settings/pricing", json={"exchange_rate": -1}, headers=auth).json()
        assert bad["code"] == -1

    def test_refresh_rate_failure_keeps_rate(self, client, auth):
        with patch("app.routes.admin.PricingPolicy.fetch_exchange_rate",
                   side_effect=ExchangeRateError("down")):
            data = client.post("/v1/admin/settings/pricing/refresh-rate", headers=auth).json()
        assert data["code"] == -1
        assert data["exchangeRate"] == 95.0

    def test_referral_settings(self, client, auth):
        data = client.get("/v1/admin/settings/referral", headers=auth).json()
        assert data["bonusPercent"] == 5.0
        updated = client.put("/v1/admin/settings/referral", json={
            "bonus_percent": 10, "min_payout": 300, "enabled": False,
        }, headers=auth).json()
        assert updated == {"code": 1, "bonusPercent": 10.0, "minPayout": 300.0, "enabled": False}

    def test_flags(self, client, auth):
        resp = client.put("/v1/admin/settings/flags",
                          json={"flags": {"CASHBACK_ENABLED": False}}, headers=auth).json()
        assert resp["flags"]["CASHBACK_ENABLED"] is False
        bad = client.put("/v1/admin/settings/flags", json={"flags": {"NOPE": True}}, headers=auth).json()
        assert bad["code"] == -1

    def test_payment_credentials(self, client, auth):
        resp = client.post("/v1/admin/settings/payment-credentials", json={
            "merchant_login": "shop", "password1": "p1", "password2": "p2",
        }, headers=auth).json()
        assert resp["status"] == "configured"
        overview = client.get("/v1/admin/settings", headers=auth).json()
        assert overview["payment"]["merchant_login"] == "shop"
        assert "payment_password1" not in overview["config"]

    def test_change_password(self, client, auth):
        resp = client.post("/v1/admin/settings/change-password", json={
            "old_password": "admin123", "new_password": "newpass1",
        }, headers=auth).json()
        assert resp["code"] == 1
        login = client.post("/v1/admin/auth/login", json={
            "email": "admin@esim-service.com", "password": "newpass1",
        }).json()
        assert login["code"] == 1


class TestProviderAdmin:

    def _gateway(self):
        gateway = MagicMock()
        gateway.balance.return_value = ProviderBalance(
            amount=Decimal("123.45"), currency="USD", provider="esimaccess"
        )
        gateway.health_check.return_value = {"esimaccess": True, "fallback": False}
        gateway.list_packages.return_value = [ProviderPackage(
            package_code="TR_1GB_7D", name="Turkey 1GB", country="TR", volume_kb=1048576,
            validity_days=7, price_minor=350, provider="esimaccess",
        )]
        return gateway

    def test_balance_and_health(self, client, auth):
        with patch("app.routes.admin.build_gateway_from_env", return_value=self._gateway()):
            balance = client.get("/v1/admin/provider/balance", headers=auth).json()
            health = client.get("/v1/admin/provider/health", headers=auth).json()
        assert balance["amount"] == "123.45"
        assert health["providers"] == {"esimaccess": True, "fallback": False}

    def test_balance_all_failed(self, client, auth):
        gateway = self._gateway()
        gateway.balance.side_effect = AllProvidersFailedError("查询余额", [ProviderError("esimaccess", "down")])
        with patch("app.routes.admin.build_gateway_from_env", return_value=gateway):
            assert client.get("/v1/admin/provider/balance", headers=auth).json()["code"] == -1

    def test_packages(self, client, auth):
        with patch("app.routes.admin.build_gateway_from_env", return_value=self._gateway()):
            data = client.get("/v1/admin/provider/packages", params={"country": "TR"}, headers=auth).json()
        assert data["packages"][0]["package_code"] == "TR_1GB_7D"

    def test_sync(self, client, auth):
        with patch("app.routes.admin.build_gateway_from_env", return_value=self._gateway()):
            data = client.post("/v1/admin/provider/sync", headers=auth).json()
        assert data["code"] == 1
        assert data["synced"] == 2
        products = client.get("/v1/admin/products", headers=auth).json()
        assert products["meta"]["total"] == 1

    def test_vendor_calls_run_outside_event_loop(self, client, auth):
        seen = []

        def _record(*args, **kwargs):
            try:
                asyncio.get_running_loop()
                seen.append(False)
            except RuntimeError:
                seen.append(True)
            return ProviderBalance(amount=Decimal("1.00"), currency="USD", provider="esimaccess")

        gateway = self._gateway()
        gateway.balance.side_effect = _record
        with patch("app.routes.admin.build_gateway_from_env", return_value=gateway):
            assert client.get("/v1/admin/provider/balance", headers=auth).json()["code"] == 1
        assert seen == [True]
