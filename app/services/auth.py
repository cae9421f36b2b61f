"""
认证模块：管理员 JWT 令牌生成/验证、密码 bcrypt 哈希、登录锁定、FastAPI 依赖项，
以及 Telegram Mini App initData 校验。
"""

import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qsl

import bcrypt
from fastapi import Request, HTTPException
from jose import jwt, JWTError

from app.database import get_db

JWT_SECRET = os.environ.get("JWT_SECRET", "change-me-to-a-random-secret-key")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = 24

MAX_LOGIN_FAILURES = 5
LOCKOUT_MINUTES = 15

ADMIN_ROLES = ("SUPER_ADMIN", "ADMIN", "SUPPORT")

# initData 最长有效期（秒）
INIT_DATA_MAX_AGE = 24 * 3600


def hash_password(password: str) -> str:
    """使用 bcrypt 对密码进行哈希。"""
    return bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """验证密码是否与 bcrypt 哈希匹配。"""
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(email: str, role: str) -> str:
    """生成 JWT 令牌，有效期 24 小时。"""
    expire = datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRE_HOURS)
    payload = {"sub": email, "role": role, "exp": expire}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> dict:
    """
    解码并验证 JWT 令牌。

    Raises:
        ValueError: 令牌无效或已过期。
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        if "sub" not in payload:
            raise ValueError("令牌缺少用户信息")
        return payload
    except JWTError as e:
        raise ValueError(f"令牌无效: {e}")


def authenticate(email: str, password: str) -> dict:
    """
    验证管理员邮箱和密码。

    - 检查账号是否停用、是否被锁定（连续 5 次失败锁定 15 分钟）
    - 成功：重置失败计数，记录登录时间，返回 JWT 令牌
    - 失败：递增失败计数，达到 5 次则设置锁定时间

    Raises:
        ValueError: 认证失败时抛出，msg 包含错误原因。
    """
    db = get_db()
    try:
        admin = db.execute(
            "SELECT * FROM admin WHERE email = ?", (email,)
        ).fetchone()

        if not admin:
            raise ValueError("邮箱或密码错误")
        if not admin["is_active"]:
            raise ValueError("账号已停用")

        if admin["locked_until"]:
            locked_until = datetime.strptime(admin["locked_until"], "%Y-%m-%d %H:%M:%S")
            if datetime.now() < locked_until:
                raise ValueError("账号已锁定，请稍后再试")
            # 锁定已过期，重置
            db.execute(
                "UPDATE admin SET login_fail_count = 0, locked_until = NULL WHERE id = ?",
                (admin["id"],),
            )
            db.commit()
            admin = db.execute(
                "SELECT * FROM admin WHERE id = ?", (admin["id"],)
            ).fetchone()

        if not verify_password(password, admin["password_hash"]):
            fail_count = admin["login_fail_count"] + 1
            if fail_count >= MAX_LOGIN_FAILURES:
                locked_until = (datetime.now() + timedelta(minutes=LOCKOUT_MINUTES)).strftime(
                    "%Y-%m-%d %H:%M:%S"
                )
                db.execute(
                    "UPDATE admin SET login_fail_count = ?, locked_until = ? WHERE id = ?",
                    (fail_count, locked_until, admin["id"]),
                )
            else:
                db.execute(
                    "UPDATE admin SET login_fail_count = ? WHERE id = ?",
                    (fail_count, admin["id"]),
                )
            db.commit()
            raise ValueError("邮箱或密码错误")

        db.execute(
            """UPDATE admin SET login_fail_count = 0, locked_until = NULL, last_login_at = ?
               WHERE id = ?""",
            (datetime.now().strftime("%Y-%m-%d %H:%M:%S"), admin["id"]),
        )
        db.commit()

        return {
            "code": 1,
            "token": create_token(email, admin["role"]),
            "admin": {
                "id": admin["id"],
                "email": admin["email"],
                "first_name": admin["first_name"],
                "last_name": admin["last_name"],
                "role": admin["role"],
            },
        }
    finally:
        db.close()


def change_password(email: str, old_password: str, new_password: str) -> None:
    """
    修改管理员密码。

    Raises:
        ValueError: 原密码错误或新密码过短。
    """
    if len(new_password) < 6:
        raise ValueError("新密码长度至少 6 位")
    db = get_db()
    try:
        admin = db.execute("SELECT * FROM admin WHERE email = ?", (email,)).fetchone()
        if not admin or not verify_password(old_password, admin["password_hash"]):
            raise ValueError("原密码错误")
        db.execute(
            "UPDATE admin SET password_hash = ? WHERE id = ?",
            (hash_password(new_password), admin["id"]),
        )
        db.commit()
    finally:
        db.close()


def get_current_admin(request: Request) -> dict:
    """
    FastAPI 依赖项：从 Authorization header (Bearer) 或 cookie 中提取并验证 JWT。

    Raises:
        HTTPException(401): 令牌缺失或无效。
    """
    token = None

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:]

    if not token:
        token = request.cookies.get("token")

    if not token:
        raise HTTPException(status_code=401, detail="未提供认证令牌")

    try:
        return verify_token(token)
    except ValueError:
        raise HTTPException(status_code=401, detail="认证令牌无效或已过期")


def require_super_admin(request: Request) -> dict:
    """FastAPI 依赖项：仅允许 SUPER_ADMIN 角色。"""
    admin = get_current_admin(request)
    if admin.get("role") != "SUPER_ADMIN":
        raise HTTPException(status_code=403, detail="权限不足")
    return admin


# ── Telegram Mini App ────────────────────────────────────


def verify_telegram_init_data(init_data: str, bot_token: str | None = None) -> dict:
    """
    校验 Telegram WebApp initData 并返回其中的 user 对象。

    1. 解析 query string，取出 hash
    2. 其余字段按 key 排序，以 "key=value" 用换行拼接为 data_check_string
    3. secret_key = HMAC-SHA256(key="WebAppData", msg=bot_token)
    4. 期望 hash = HMAC-SHA256(key=secret_key, msg=data_check_string) 的十六进制

    Raises:
        ValueError: 未配置 bot token、签名错误、数据过期或缺少 user。
    """
    bot_token = bot_token or os.getenv("TELEGRAM_BOT_TOKEN")
    if not bot_token:
        raise ValueError("未配置 TELEGRAM_BOT_TOKEN")

    fields = dict(parse_qsl(init_data or "", keep_blank_values=True))
    received_hash = fields.pop("hash", None)
    if not received_hash:
        raise ValueError("initData 缺少 hash")

    data_check_string = "\n".join(f"{k}={fields[k]}" for k in sorted(fields))
    secret_key = hmac.new(b"WebAppData", bot_token.encode("utf-8"), hashlib.sha256).digest()
    expected = hmac.new(
        secret_key, data_check_string.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    if not hmac.compare_digest(expected, received_hash):
        raise ValueError("initData 签名错误")

    auth_date = int(fields.get("auth_date") or 0)
    if auth_date and time.time() - auth_date > INIT_DATA_MAX_AGE:
        raise ValueError("initData 已过期")

    try:
        user = json.loads(fields["user"])
    except (KeyError, ValueError):
        raise ValueError("initData 缺少 user")
    if "id" not in user:
        raise ValueError("initData 缺少 user.id")
    return {"user": user, "start_param": fields.get("start_param")}
