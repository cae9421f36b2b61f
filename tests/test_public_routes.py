"""Mini App 公开接口测试：用户、商品、订单、支付、等级与推荐。"""

import asyncio
import hashlib
import hmac
import json
import os
import sqlite3
import tempfile
import time
from unittest.mock import MagicMock, patch
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="public_routes_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-public-routes"

import app.database as _db_mod
from app.database import get_db, init_db
from app.main import app
from app.models.schemas import PurchaseResult
from app.services.sign import generate_result_sign
from app.services.user_service import UserService

BOT_TOKEN = "123456:TEST-TOKEN"


@pytest.fixture(autouse=True)
def _setup_db(monkeypatch):
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
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", BOT_TOKEN)
    monkeypatch.setenv("TELEGRAM_BOT_USERNAME", "esim_test_bot")
    monkeypatch.setenv("ROBOKASSA_MERCHANT_LOGIN", "esimshop")
    monkeypatch.setenv("ROBOKASSA_PASSWORD1", "pass-one")
    monkeypatch.setenv("ROBOKASSA_PASSWORD2", "pass-two")
    yield


@pytest.fixture
def client():
    return TestClient(app)


def _create_product(provider_id="TR_1GB_7D", country="TR", price=1340, is_active=1, is_unlimited=0) -> int:
    conn = get_db()
    cursor = conn.execute(
        """INSERT INTO products (provider_id, country, name, data_amount, validity_days,
                                 provider_price, price, is_active, is_unlimited)
           VALUES (?, ?, 'Package', '1 GB', 7, 350, ?, ?, ?)""",
        (provider_id, country, price, is_active, is_unlimited),
    )
    conn.commit()
    product_id = cursor.lastrowid
    conn.close()
    return product_id


def _init_data(user: dict, **extra) -> str:
    fields = {"auth_date": str(int(time.time())), "user": json.dumps(user)}
    fields.update(extra)
    data_check_string = "\n".join(f"{k}={fields[k]}" for k in sorted(fields))
    secret = hmac.new(b"WebAppData", BOT_TOKEN.encode("utf-8"), hashlib.sha256).digest()
    fields["hash"] = hmac.new(secret, data_check_string.encode("utf-8"), hashlib.sha256).hexdigest()
    return urlencode(fields)


class TestHealth:

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}


class TestUserRoutes:

    def test_telegram_auth_creates_user(self, client):
        resp = client.post("/v1/users/auth/telegram", json={
            "init_data": _init_data({"id": 42, "first_name": "Ann", "username": "ann"}),
        })
        data = resp.json()
        assert data["code"] == 1
        assert data["user"]["telegram_id"] == 42
        assert data["user"]["username"] == "ann"

    def test_telegram_auth_with_start_param_referral(self, client):
        referrer = UserService().find_or_create(1)
        resp = client.post("/v1/users/auth/telegram", json={
            "init_data": _init_data({"id": 42}, start_param=referrer["referral_code"]),
        })
        assert resp.json()["user"]["referred_by_id"] == referrer["id"]

    def test_telegram_auth_rejects_bad_signature(self, client):
        resp = client.post("/v1/users/auth/telegram", json={"init_data": "user=%7B%7D&hash=deadbeef"})
        assert resp.status_code == 401
        assert resp.json()["code"] == -1

    def test_get_user_and_stats(self, client):
        user = UserService().find_or_create(42)
        assert client.get(f"/v1/users/{user['id']}").json()["user"]["id"] == user["id"]
        stats = client.get(f"/v1/users/{user['id']}/stats").json()
        assert stats["code"] == 1
        assert stats["orders_count"] == 0

    def test_missing_user(self, client):
        assert client.get("/v1/users/999").status_code == 404
        assert client.get("/v1/users/999/stats").status_code == 404


class TestProductRoutes:

    def test_list_only_active(self, client):
        _create_product("A")
        _create_product("B", is_active=0)
        data = client.get("/v1/products").json()
        assert data["code"] == 1
        assert [p["provider_id"] for p in data["data"]] == ["A"]
        assert data["meta"]["total"] == 1

    def test_filters(self, client):
        _create_product("A", country="TR")
        _create_product("B", country="DE")
        _create_product("C", country="TR", is_unlimited=1)
        data = client.get("/v1/products", params={"country": "TR", "type": "unlimited"}).json()
        assert [p["provider_id"] for p in data["data"]] == ["C"]

    def test_unknown_type(self, client):
        assert client.get("/v1/products", params={"type": "weird"}).json()["code"] == -1

    def test_countries(self, client):
        _create_product("A", country="TR")
        _create_product("B", country="DE")
        _create_product("C", country="FR", is_active=0)
        assert client.get("/v1/products/countries").json()["countries"] == ["DE", "TR"]

    def test_get_product(self, client):
        product_id = _create_product()
        assert client.get(f"/v1/products/{product_id}").json()["product"]["price"] == 1340
        assert client.get("/v1/products/999").status_code == 404


class TestOrderAndPaymentRoutes:

    def test_create_order_and_pay(self, client):
        user = UserService().find_or_create(42)
        product_id = _create_product(price=1340)

        created = client.post("/v1/orders", json={
            "user_id": user["id"], "product_id": product_id, "quantity": 1,
        }).json()
        assert created["code"] == 1
        order_id = created["order"]["id"]

        payment = client.post("/v1/payments/create", json={"order_id": order_id}).json()
        assert payment["code"] == 1
        assert payment["payment_url"].startswith("https://auth.robokassa.ru/Merchant/Index.aspx?")

        gateway = MagicMock()
        gateway.purchase.return_value = PurchaseResult(
            order_ref="B1", iccid="890001", qr_payload="LPA:1$x$y", activation_code="LPA:1$x$y",
            provider="esimaccess",
        )
        inv_id = payment["inv_id"]
        sign = generate_result_sign("1340.00", inv_id, "pass-two").upper()
        with patch("app.services.order_service.build_gateway_from_env", return_value=gateway), \
                patch("app.services.order_service.TelegramNotifier"):
            resp = client.post("/v1/payments/robokassa/result", data={
                "OutSum": "1340.00", "InvId": str(inv_id), "SignatureValue": sign,
            })
        assert resp.status_code == 200
        assert resp.text == f"OK{inv_id}"

        order = client.get(f"/v1/orders/{order_id}").json()["order"]
        assert order["status"] == "COMPLETED"
        assert order["iccid"] == "890001"

        orders = client.get(f"/v1/orders/user/{user['id']}").json()["orders"]
        assert [o["id"] for o in orders] == [order_id]

        transactions = client.get(f"/v1/users/{user['id']}/transactions").json()["transactions"]
        assert transactions[0]["status"] == "SUCCEEDED"

    def test_result_rejects_bad_signature(self, client):
        user = UserService().find_or_create(42)
        product_id = _create_product(price=1340)
        order_id = client.post("/v1/orders", json={
            "user_id": user["id"], "product_id": product_id,
        }).json()["order"]["id"]
        inv_id = client.post("/v1/payments/create", json={"order_id": order_id}).json()["inv_id"]

        resp = client.get("/v1/payments/robokassa/result", params={
            "OutSum": "1340.00", "InvId": str(inv_id), "SignatureValue": "0" * 32,
        })

        assert resp.status_code == 400
        assert resp.text.startswith("ERROR")
        assert client.get(f"/v1/orders/{order_id}").json()["order"]["status"] == "PENDING"

    def test_create_order_validation(self, client):
        user = UserService().find_or_create(42)
        product_id = _create_product(is_active=0)
        resp = client.post("/v1/orders", json={"user_id": user["id"], "product_id": product_id})
        assert resp.json()["code"] == -1

    def test_missing_order(self, client):
        assert client.get("/v1/orders/999").status_code == 404

    def test_success_and_fail_pages(self, client):
        success = client.get("/v1/payments/robokassa/success", params={"InvId": "5"})
        assert success.status_code == 200
        assert "https://t.me/esim_test_bot/app" in success.text
        assert "#5" in success.text
        fail = client.post("/v1/payments/robokassa/fail", data={"InvId": "<script>"})
        assert "<script>" not in fail.text


class TestLoyaltyAndReferralRoutes:

    def test_levels(self, client):
        from app.services.loyalty_service import LoyaltyService

        LoyaltyService().create_level("Silver", 5000, 3, 5)
        levels = client.get("/v1/loyalty/levels").json()["levels"]
        assert levels[0]["name"] == "Silver"
        assert levels[0]["min_spent"] == "5000.00"

    def test_referral_stats(self, client):
        svc = UserService()
        referrer = svc.find_or_create(1)
        svc.find_or_create(2, referral_code=referrer["referral_code"])
        data = client.get(f"/v1/referrals/{referrer['id']}").json()
        assert data["code"] == 1
        assert data["referrals_count"] == 1
        assert client.get("/v1/referrals/999").status_code == 404


def _runs_outside_event_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return True
    return False


class TestBlockingWorkOffEventLoop:

    def test_webhook_processing_runs_in_worker_thread(self, client):
        seen = []

        def handle_webhook(params):
            seen.append(_runs_outside_event_loop())
            return f"OK{params['InvId']}"

        with patch("app.routes.payments.PaymentService.handle_webhook", side_effect=handle_webhook):
            resp = client.post("/v1/payments/robokassa/result", data={
                "OutSum": "1.00", "InvId": "7", "SignatureValue": "x",
            })

        assert resp.text == "OK7"
        assert seen == [True]
