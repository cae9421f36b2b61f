"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。

金额字段统一以整数“分”（戈比）存储，列名以 _cents 结尾；
商品本地售价 price 为整数卢布。
"""

import os
import sqlite3
from pathlib import Path

import bcrypt
from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/esim.db")


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS admin (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    email           VARCHAR(128) NOT NULL UNIQUE,
    password_hash   VARCHAR(128) NOT NULL,
    first_name      VARCHAR(64),
    last_name       VARCHAR(64),
    role            VARCHAR(16)  DEFAULT 'SUPPORT',
    is_active       INTEGER      DEFAULT 1,
    login_fail_count INTEGER     DEFAULT 0,
    locked_until    DATETIME,
    last_login_at   DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS system_config (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key      VARCHAR(64)  NOT NULL UNIQUE,
    config_value    TEXT,
    description     TEXT,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS loyalty_levels (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    name            VARCHAR(64)  NOT NULL UNIQUE,
    min_spent_cents INTEGER      NOT NULL DEFAULT 0,
    cashback_percent DECIMAL(5,2) NOT NULL DEFAULT 0,
    discount_percent DECIMAL(5,2) NOT NULL DEFAULT 0,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS users (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    telegram_id     INTEGER      NOT NULL UNIQUE,
    username        VARCHAR(64),
    first_name      VARCHAR(64),
    last_name       VARCHAR(64),
    balance_cents   INTEGER      NOT NULL DEFAULT 0,
    bonus_balance_cents INTEGER  NOT NULL DEFAULT 0,
    total_spent_cents INTEGER    NOT NULL DEFAULT 0,
    loyalty_level_id INTEGER     REFERENCES loyalty_levels(id) ON DELETE SET NULL,
    referral_code   VARCHAR(16)  NOT NULL UNIQUE,
    referred_by_id  INTEGER      REFERENCES users(id),
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    CHECK (bonus_balance_cents >= 0)
);

CREATE TABLE IF NOT EXISTS products (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    provider_id     VARCHAR(64)  NOT NULL UNIQUE,
    country         VARCHAR(64)  NOT NULL,
    region          VARCHAR(128),
    name            VARCHAR(128) NOT NULL,
    data_amount     VARCHAR(32)  NOT NULL,
    validity_days   INTEGER      NOT NULL,
    provider_price  INTEGER      NOT NULL,
    price           INTEGER      NOT NULL,
    markup_percent  DECIMAL(6,2),
    is_active       INTEGER      DEFAULT 1,
    is_unlimited    INTEGER      DEFAULT 0,
    badge           VARCHAR(32),
    badge_color     VARCHAR(16),
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER      NOT NULL REFERENCES users(id),
    product_id      INTEGER      NOT NULL REFERENCES products(id),
    quantity        INTEGER      NOT NULL DEFAULT 1,
    product_price_cents INTEGER  NOT NULL,
    discount_cents  INTEGER      NOT NULL DEFAULT 0,
    bonus_used_cents INTEGER     NOT NULL DEFAULT 0,
    total_amount_cents INTEGER   NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'PENDING',
    qr_code         TEXT,
    iccid           VARCHAR(32),
    activation_code TEXT,
    provider_order_id VARCHAR(64),
    error_message   TEXT,
    fulfillment_started_at DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    paid_at         DATETIME,
    completed_at    DATETIME,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    CHECK (total_amount_cents >= 0),
    CHECK (discount_cents >= 0),
    CHECK (bonus_used_cents >= 0)
);

CREATE TABLE IF NOT EXISTS transactions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id         INTEGER      NOT NULL REFERENCES users(id),
    order_id        INTEGER      REFERENCES orders(id),
    type            VARCHAR(16)  NOT NULL,
    status          VARCHAR(16)  NOT NULL DEFAULT 'PENDING',
    amount_cents    INTEGER      NOT NULL,
    payment_provider VARCHAR(32),
    payment_id      VARCHAR(64),
    metadata        TEXT,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_orders_status
    ON orders(status);
CREATE INDEX IF NOT EXISTS idx_orders_user
    ON orders(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_orders_created_at
    ON orders(created_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_products_provider_id
    ON products(provider_id);
CREATE INDEX IF NOT EXISTS idx_products_country
    ON products(country, is_active);
CREATE UNIQUE INDEX IF NOT EXISTS idx_users_telegram_id
    ON users(telegram_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_users_referral_code
    ON users(referral_code);
CREATE INDEX IF NOT EXISTS idx_users_referred_by
    ON users(referred_by_id);
CREATE INDEX IF NOT EXISTS idx_transactions_order
    ON transactions(order_id);
CREATE INDEX IF NOT EXISTS idx_transactions_user
    ON transactions(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_transactions_payment_id
    ON transactions(payment_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_system_config_key
    ON system_config(config_key);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表、索引，并在首次启动时创建默认管理员。"""
    # 确保 data/ 目录存在
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_INDEXES)

        # 迁移：为已有数据库添加新列
        _migrate_schema(conn)

        # 首次启动：通过环境变量创建默认管理员
        _create_default_admin(conn)

        conn.commit()
    finally:
        conn.close()


def _migrate_schema(conn: sqlite3.Connection) -> None:
    """为已有数据库添加新列（幂等操作）。"""
    # orders 表添加 fulfillment_started_at 列（至多一次履约的占位标记）
    try:
        conn.execute("SELECT fulfillment_started_at FROM orders LIMIT 1")
    except sqlite3.OperationalError:
        conn.execute("ALTER TABLE orders ADD COLUMN fulfillment_started_at DATETIME")

    # products 表添加 markup_percent 列
    try:
        conn.execute("SELECT markup_percent FROM products LIMIT 1")
    except sqlite3.OperationalError:
        conn.execute("ALTER TABLE products ADD COLUMN markup_percent DECIMAL(6,2)")


def _create_default_admin(conn: sqlite3.Connection) -> None:
    """如果 admin 表为空，则根据环境变量创建默认超级管理员账号。"""
    row = conn.execute("SELECT COUNT(*) AS cnt FROM admin").fetchone()
    if row["cnt"] > 0:
        return

    email = os.getenv("ADMIN_EMAIL", "admin@esim-service.com")
    password = os.getenv("ADMIN_PASSWORD", "admin123")

    password_hash = bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")

    conn.execute(
        "INSERT INTO admin (email, password_hash, role) VALUES (?, ?, 'SUPER_ADMIN')",
        (email, password_hash),
    )
