"""
平台配置服务：管理 system_config 表的读写。

提供通用键值读写、功能开关、推荐计划参数，以及支付密钥的加密存储。
使用 Fernet 对称加密保护敏感凭证，密钥由 JWT_SECRET 通过 PBKDF2 派生。
"""

import base64
import logging
import os
from datetime import datetime

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.database import get_db

logger = logging.getLogger(__name__)

# 持久化配置键
EXCHANGE_RATE_KEY = "EXCHANGE_RATE_USD_RUB"
DEFAULT_MARKUP_KEY = "DEFAULT_MARKUP_PERCENT"
REFERRAL_BONUS_PERCENT_KEY = "REFERRAL_BONUS_PERCENT"
REFERRAL_MIN_PAYOUT_KEY = "REFERRAL_MIN_PAYOUT"
REFERRAL_ENABLED_KEY = "REFERRAL_ENABLED"
CASHBACK_ENABLED_KEY = "CASHBACK_ENABLED"
AUTO_UPDATE_RATE_KEY = "AUTO_UPDATE_RATE"
LAST_RATE_UPDATE_KEY = "LAST_RATE_UPDATE"

# 功能开关及其默认值
FEATURE_FLAGS = {
    REFERRAL_ENABLED_KEY: True,
    CASHBACK_ENABLED_KEY: True,
    AUTO_UPDATE_RATE_KEY: True,
}

# 支付密钥（加密存储），对应环境变量作为回退
_PAYMENT_CREDENTIAL_KEYS = {
    "merchant_login": "ROBOKASSA_MERCHANT_LOGIN",
    "password1": "ROBOKASSA_PASSWORD1",
    "password2": "ROBOKASSA_PASSWORD2",
}


class PlatformConfigError(Exception):
    """平台配置操作异常。"""
    pass


def _get_fernet() -> Fernet:
    """从 JWT_SECRET 环境变量派生 Fernet 加密密钥。"""
    secret = os.getenv("JWT_SECRET", "default-secret-key")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"esim-shop-salt",
        iterations=100_000,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))
    return Fernet(key)


def _encrypt(plaintext: str) -> str:
    """加密明文字符串，返回密文。"""
    f = _get_fernet()
    return f.encrypt(plaintext.encode("utf-8")).decode("utf-8")


def _decrypt(ciphertext: str) -> str:
    """解密密文字符串，返回明文。"""
    f = _get_fernet()
    return f.decrypt(ciphertext.encode("utf-8")).decode("utf-8")


# ── 通用配置读写 ──────────────────────────────────────────


def get_config(key: str) -> str | None:
    """读取 system_config 表中指定 key 的值。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT config_value FROM system_config WHERE config_key = ?",
            (key,),
        ).fetchone()
        return row["config_value"] if row else None
    finally:
        db.close()


def set_config(key: str, value: str | None, description: str | None = None) -> None:
    """写入 system_config 表，存在则更新，不存在则插入（单条 UPSERT 语句）。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    db = get_db()
    try:
        db.execute(
            """INSERT INTO system_config (config_key, config_value, description, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(config_key) DO UPDATE SET
                   config_value = excluded.config_value,
                   description = COALESCE(excluded.description, system_config.description),
                   updated_at = excluded.updated_at""",
            (key, value, description, now),
        )
        db.commit()
    finally:
        db.close()


def get_all_config() -> dict:
    """读取全部配置，返回 {key: {"value", "description", "updated_at"}}。加密项不返回明文。"""
    db = get_db()
    try:
        rows = db.execute(
            "SELECT config_key, config_value, description, updated_at FROM system_config ORDER BY config_key"
        ).fetchall()
    finally:
        db.close()

    result = {}
    for row in rows:
        if row["config_key"].startswith("payment_"):
            continue
        result[row["config_key"]] = {
            "value": row["config_value"],
            "description": row["description"],
            "updated_at": row["updated_at"],
        }
    return result


def get_float(key: str, default: float) -> float:
    """读取数值配置，缺失或无法解析时返回默认值。"""
    raw = get_config(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("配置值无法解析为数字: %s=%r，使用默认值 %s", key, raw, default)
        return default


def get_flag(key: str) -> bool:
    """读取功能开关，缺失时使用 FEATURE_FLAGS 中的默认值。"""
    raw = get_config(key)
    if raw is None:
        return FEATURE_FLAGS.get(key, False)
    return raw.strip().lower() in ("1", "true", "yes", "on")


def set_flag(key: str, enabled: bool) -> None:
    if key not in FEATURE_FLAGS:
        raise PlatformConfigError(f"未知的功能开关: {key}")
    set_config(key, "true" if enabled else "false")


def get_feature_flags() -> dict:
    return {key: get_flag(key) for key in FEATURE_FLAGS}


# ── 推荐计划参数 ──────────────────────────────────────────


def get_referral_settings() -> dict:
    """获取推荐计划设置（默认：奖励 5%，最低提现 500，开启）。"""
    return {
        "bonusPercent": get_float(REFERRAL_BONUS_PERCENT_KEY, 5.0),
        "minPayout": get_float(REFERRAL_MIN_PAYOUT_KEY, 500.0),
        "enabled": get_flag(REFERRAL_ENABLED_KEY),
    }


def update_referral_settings(bonus_percent: float, min_payout: float, enabled: bool) -> dict:
    if bonus_percent < 0 or bonus_percent > 100:
        raise PlatformConfigError("推荐奖励比例必须在 0-100 之间")
    if min_payout < 0:
        raise PlatformConfigError("最低提现金额不能为负数")

    set_config(REFERRAL_BONUS_PERCENT_KEY, str(bonus_percent), "推荐奖励比例（%）")
    set_config(REFERRAL_MIN_PAYOUT_KEY, str(min_payout), "奖励余额最低提现金额")
    set_config(REFERRAL_ENABLED_KEY, "true" if enabled else "false", "是否开启推荐计划")
    return get_referral_settings()


# ── 支付密钥管理 ──────────────────────────────────────────


def save_payment_credentials(merchant_login: str, password1: str, password2: str) -> dict:
    """
    保存支付网关密钥（加密存储）。

    Raises:
        PlatformConfigError: 任一字段为空。
    """
    if not merchant_login or not password1 or not password2:
        raise PlatformConfigError("商户登录名和两个密码均不能为空")

    set_config("payment_merchant_login", _encrypt(merchant_login))
    set_config("payment_password1", _encrypt(password1))
    set_config("payment_password2", _encrypt(password2))
    logger.info("支付网关密钥已更新: merchant_login=%s", merchant_login)

    return {"status": "configured", "merchant_login": merchant_login}


def get_payment_credentials() -> dict | None:
    """
    获取支付网关密钥：优先使用后台保存的加密配置，缺失时回退到环境变量。

    Returns:
        dict: {"merchant_login", "password1", "password2"} 或 None（未配置时）。
    """
    result = {}
    for name, env_name in _PAYMENT_CREDENTIAL_KEYS.items():
        encrypted = get_config(f"payment_{name}")
        value = None
        if encrypted:
            try:
                value = _decrypt(encrypted)
            except InvalidToken:
                logger.error("解密支付密钥失败: %s", name)
        if not value:
            value = os.getenv(env_name)
        if not value:
            return None
        result[name] = value
    return result


def get_payment_credential_status() -> dict:
    """获取支付密钥配置状态（不返回密码）。"""
    creds = get_payment_credentials()
    if not creds:
        return {"status": "unconfigured"}
    source = "admin" if get_config("payment_merchant_login") else "env"
    return {
        "status": "configured",
        "source": source,
        "merchant_login": creds["merchant_login"],
    }
