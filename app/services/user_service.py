"""用户服务：首次接触建档、推荐码绑定、查询统计，以及奖励余额的原子增减。"""

import logging
import secrets
from datetime import datetime

from app.database import get_db
from app.models.schemas import OrderStatus
from app.services.money import from_cents
from app.services.pagination import paginate

logger = logging.getLogger(__name__)


class UserError(Exception):
    """用户操作异常。"""
    pass


class UserNotFoundError(UserError):
    pass


def user_to_dict(row) -> dict:
    data = {
        "id": row["id"],
        "telegram_id": row["telegram_id"],
        "username": row["username"],
        "first_name": row["first_name"],
        "last_name": row["last_name"],
        "balance": str(from_cents(row["balance_cents"])),
        "bonus_balance": str(from_cents(row["bonus_balance_cents"])),
        "total_spent": str(from_cents(row["total_spent_cents"])),
        "loyalty_level_id": row["loyalty_level_id"],
        "referral_code": row["referral_code"],
        "referred_by_id": row["referred_by_id"],
        "created_at": row["created_at"],
    }
    if "level_name" in row.keys():
        data["loyalty_level"] = row["level_name"]
    return data


_USER_SELECT = """SELECT u.*, l.name AS level_name
                  FROM users u LEFT JOIN loyalty_levels l ON l.id = u.loyalty_level_id"""


# ── 奖励余额原子操作（由调用方提交事务） ──────────────────


def reserve_bonus(db, user_id: int, cents: int) -> bool:
    """
    预扣奖励余额：单条带下限条件的 UPDATE，余额不足时不扣减。

    Returns:
        True 扣减成功；False 余额不足。
    """
    if cents <= 0:
        return True
    cursor = db.execute(
        """UPDATE users SET bonus_balance_cents = bonus_balance_cents - ?, updated_at = ?
           WHERE id = ? AND bonus_balance_cents >= ?""",
        (cents, datetime.now().strftime("%Y-%m-%d %H:%M:%S"), user_id, cents),
    )
    return cursor.rowcount == 1


def credit_bonus(db, user_id: int, cents: int) -> None:
    """增加奖励余额（返现、推荐奖励、退回预扣）。"""
    if cents <= 0:
        return
    db.execute(
        """UPDATE users SET bonus_balance_cents = bonus_balance_cents + ?, updated_at = ?
           WHERE id = ?""",
        (cents, datetime.now().strftime("%Y-%m-%d %H:%M:%S"), user_id),
    )


def release_bonus(db, user_id: int, cents: int) -> None:
    """退回订单预扣的奖励余额。"""
    credit_bonus(db, user_id, cents)


class UserService:

    def _generate_referral_code(self, db) -> str:
        for _ in range(10):
            code = secrets.token_hex(4).upper()
            row = db.execute("SELECT 1 FROM users WHERE referral_code = ?", (code,)).fetchone()
            if not row:
                return code
        raise UserError("无法生成唯一推荐码，请重试")

    def find_or_create(
        self,
        telegram_id: int,
        username: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        referral_code: str | None = None,
    ) -> dict:
        """
        按 Telegram ID 查找用户，不存在则创建。

        新用户携带推荐码时绑定推荐人；推荐码无效时忽略。已有用户不会改绑推荐人。
        """
        db = get_db()
        try:
            row = db.execute(
                f"{_USER_SELECT} WHERE u.telegram_id = ?", (telegram_id,)
            ).fetchone()
            if row:
                return user_to_dict(row)

            referrer_id = None
            if referral_code:
                ref = db.execute(
                    "SELECT id FROM users WHERE referral_code = ?",
                    (referral_code.strip().upper(),),
                ).fetchone()
                if ref:
                    referrer_id = ref["id"]
                else:
                    logger.info("推荐码无效，忽略: %s", referral_code)

            now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            code = self._generate_referral_code(db)
            try:
                cursor = db.execute(
                    """INSERT INTO users
                       (telegram_id, username, first_name, last_name, referral_code,
                        referred_by_id, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (telegram_id, username, first_name, last_name, code, referrer_id, now, now),
                )
                db.commit()
            except Exception as e:
                db.rollback()
                # 并发首次接触：另一请求已建档
                if "UNIQUE constraint failed: users.telegram_id" in str(e):
                    row = db.execute(
                        f"{_USER_SELECT} WHERE u.telegram_id = ?", (telegram_id,)
                    ).fetchone()
                    return user_to_dict(row)
                raise

            logger.info(
                "新用户建档: telegram_id=%s, user_id=%s, referred_by=%s",
                telegram_id, cursor.lastrowid, referrer_id,
            )
            row = db.execute(f"{_USER_SELECT} WHERE u.id = ?", (cursor.lastrowid,)).fetchone()
            return user_to_dict(row)
        finally:
            db.close()

    def get_user(self, user_id: int) -> dict:
        db = get_db()
        try:
            row = db.execute(f"{_USER_SELECT} WHERE u.id = ?", (user_id,)).fetchone()
        finally:
            db.close()
        if not row:
            raise UserNotFoundError("用户不存在")
        return user_to_dict(row)

    def get_by_telegram_id(self, telegram_id: int) -> dict | None:
        db = get_db()
        try:
            row = db.execute(
                f"{_USER_SELECT} WHERE u.telegram_id = ?", (telegram_id,)
            ).fetchone()
        finally:
            db.close()
        return user_to_dict(row) if row else None

    def list_users(self, page: int = 1, limit: int = 20, search: str | None = None) -> dict:
        where_sql = ""
        params: list = []
        if search:
            where_sql = " WHERE u.username LIKE ? OR u.first_name LIKE ? OR CAST(u.telegram_id AS TEXT) = ?"
            like = f"%{search}%"
            params = [like, like, search]
        db = get_db()
        try:
            return paginate(
                db,
                f"SELECT COUNT(*) FROM users u{where_sql}",
                f"{_USER_SELECT}{where_sql} ORDER BY u.created_at DESC, u.id DESC",
                params, page, limit, user_to_dict,
            )
        finally:
            db.close()

    def get_user_stats(self, user_id: int) -> dict:
        """用户统计：完成订单数、推荐人数、已完成订单累计金额。"""
        user = self.get_user(user_id)
        db = get_db()
        try:
            orders_count = db.execute(
                "SELECT COUNT(*) FROM orders WHERE user_id = ? AND status = ?",
                (user_id, OrderStatus.COMPLETED),
            ).fetchone()[0]
            referrals_count = db.execute(
                "SELECT COUNT(*) FROM users WHERE referred_by_id = ?", (user_id,)
            ).fetchone()[0]
            spent = db.execute(
                "SELECT COALESCE(SUM(total_amount_cents), 0) FROM orders WHERE user_id = ? AND status = ?",
                (user_id, OrderStatus.COMPLETED),
            ).fetchone()[0]
        finally:
            db.close()
        return {
            "user": user,
            "orders_count": orders_count,
            "referrals_count": referrals_count,
            "total_spent": str(from_cents(spent)),
        }

    def adjust_bonus(self, user_id: int, cents: int) -> dict:
        """后台手动调整奖励余额；扣减不能使余额为负。"""
        db = get_db()
        try:
            if cents >= 0:
                credit_bonus(db, user_id, cents)
                ok = True
            else:
                ok = reserve_bonus(db, user_id, -cents)
            db.commit()
        finally:
            db.close()
        if not ok:
            raise UserError("奖励余额不足")
        return self.get_user(user_id)
