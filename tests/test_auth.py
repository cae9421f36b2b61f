"""认证模块单元测试：密码哈希、JWT、登录锁定、Telegram initData 校验。"""

import hashlib
import hmac
import json
import os
import sqlite3
import tempfile
import time
from urllib.parse import urlencode

import pytest
from fastapi.testclient import TestClient

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="auth_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name
os.environ["JWT_SECRET"] = "test-secret-key-for-auth"
os.environ["ADMIN_EMAIL"] = "admin@esim-service.com"
os.environ["ADMIN_PASSWORD"] = "admin123"

import app.database as _db_mod
from app.database import get_db, init_db
from app.main import app
from app.services.auth import (
    authenticate,
    change_password,
    create_token,
    hash_password,
    verify_password,
    verify_telegram_init_data,
    verify_token,
)

BOT_TOKEN = "123456:TEST-TOKEN"


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


def _sign_init_data(fields: dict, bot_token: str = BOT_TOKEN) -> str:
    """按 Telegram WebApp 规则为 initData 生成 hash。"""
    data_check_string = "\n".join(f"{k}={fields[k]}" for k in sorted(fields))
    secret = hmac.new(b"WebAppData", bot_token.encode("utf-8"), hashlib.sha256).digest()
    signed = dict(fields)
    signed["hash"] = hmac.new(secret, data_check_string.encode("utf-8"), hashlib.sha256).hexdigest()
    return urlencode(signed)


def _init_data_fields(auth_date=None, **extra) -> dict:
    fields = {
        "auth_date": str(auth_date or int(time.time())),
        "query_id": "AAHdF6IQAAAAAN0XohDhrOrc",
        "user": json.dumps({"id": 279058397, "first_name": "Vlad", "username": "vlad"}),
    }
    fields.update(extra)
    return fields


# ── 密码与令牌 ──


class TestPasswordHashing:

    def test_hash_and_verify(self):
        hashed = hash_password("mypassword")
        assert verify_password("mypassword", hashed)
        assert not verify_password("wrongpassword", hashed)

    def test_different_hashes_for_same_password(self):
        assert hash_password("test") != hash_password("test")


class TestJWT:

    def test_roundtrip(self):
        payload = verify_token(create_token("a@b.c", "ADMIN"))
        assert payload["sub"] == "a@b.c"
        assert payload["role"] == "ADMIN"

    def test_invalid_token(self):
        with pytest.raises(ValueError):
            verify_token("not-a-token")


# ── 登录 ──


class TestAuthenticate:

    def test_success(self):
        result = authenticate("admin@esim-service.com", "admin123")
        assert result["code"] == 1
        assert result["admin"]["role"] == "SUPER_ADMIN"
        conn = get_db()
        row = conn.execute("SELECT last_login_at FROM admin").fetchone()
        conn.close()
        assert row["last_login_at"] is not None

    def test_wrong_password(self):
        with pytest.raises(ValueError, match="邮箱或密码错误"):
            authenticate("admin@esim-service.com", "nope")

    def test_unknown_email(self):
        with pytest.raises(ValueError):
            authenticate("ghost@example.com", "admin123")

    def test_lockout_after_five_failures(self):
        for _ in range(5):
            with pytest.raises(ValueError):
                authenticate("admin@esim-service.com", "nope")
        with pytest.raises(ValueError, match="锁定"):
            authenticate("admin@esim-service.com", "admin123")

    def test_expired_lock_is_reset(self):
        conn = get_db()
        conn.execute(
            "UPDATE admin SET login_fail_count = 5, locked_until = '2000-01-01 00:00:00'"
        )
        conn.commit()
        conn.close()
        assert authenticate("admin@esim-service.com", "admin123")["code"] == 1

    def test_inactive_account(self):
        conn = get_db()
        conn.execute("UPDATE admin SET is_active = 0")
        conn.commit()
        conn.close()
        with pytest.raises(ValueError, match="停用"):
            authenticate("admin@esim-service.com", "admin123")

    def test_change_password(self):
        change_password("admin@esim-service.com", "admin123", "newpass1")
        assert authenticate("admin@esim-service.com", "newpass1")["code"] == 1

    def test_change_password_wrong_old(self):
        with pytest.raises(ValueError, match="原密码错误"):
            change_password("admin@esim-service.com", "bad", "newpass1")


class TestAdminEndpointsRequireToken:

    def test_no_token(self, client):
        assert client.get("/v1/admin/dashboard").status_code == 401

    def test_bad_token(self, client):
        resp = client.get("/v1/admin/dashboard", headers={"Authorization": "Bearer junk"})
        assert resp.status_code == 401

    def test_login_route(self, client):
        resp = client.post("/v1/admin/auth/login", json={
            "email": "admin@esim-service.com", "password": "admin123",
        })
        data = resp.json()
        assert data["code"] == 1
        token = data["token"]
        assert client.get(
            "/v1/admin/dashboard", headers={"Authorization": f"Bearer {token}"}
        ).status_code == 200

    def test_login_route_failure(self, client):
        resp = client.post("/v1/admin/auth/login", json={
            "email": "admin@esim-service.com", "password": "bad",
        })
        assert resp.json() == {"code": -1, "msg": "邮箱或密码错误"}

    def test_super_admin_only_route(self, client):
        token = create_token("support@example.com", "SUPPORT")
        resp = client.post(
            "/v1/admin/settings/payment-credentials",
            json={"merchant_login": "shop", "password1": "a", "password2": "b"},
            headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 403


# ── Telegram initData ──


class TestTelegramInitData:

    def test_valid(self):
        init_data = _sign_init_data(_init_data_fields(start_param="REF123"))
        result = verify_telegram_init_data(init_data, BOT_TOKEN)
        assert result["user"]["id"] == 279058397
        assert result["start_param"] == "REF123"

    def test_tampered(self):
        fields = _init_data_fields()
        init_data = _sign_init_data(fields).replace("Vlad", "Evil")
        with pytest.raises(ValueError, match="签名错误"):
            verify_telegram_init_data(init_data, BOT_TOKEN)

    def test_wrong_bot_token(self):
        init_data = _sign_init_data(_init_data_fields(), bot_token="999:OTHER")
        with pytest.raises(ValueError):
            verify_telegram_init_data(init_data, BOT_TOKEN)

    def test_expired(self):
        init_data = _sign_init_data(_init_data_fields(auth_date=int(time.time()) - 2 * 86400))
        with pytest.raises(ValueError, match="过期"):
            verify_telegram_init_data(init_data, BOT_TOKEN)

    def test_missing_hash(self):
        with pytest.raises(ValueError, match="hash"):
            verify_telegram_init_data("auth_date=1", BOT_TOKEN)

    def test_no_bot_token_configured(self, monkeypatch):
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
        with pytest.raises(ValueError, match="TELEGRAM_BOT_TOKEN"):
            verify_telegram_init_data("hash=abc")
