"""
忠诚度等级服务：按累计消费匹配等级、重算用户等级、等级增删改查。

等级匹配规则：min_spent ≤ total_spent 的等级中 min_spent 最大者；
min_spent 相同时按 id 取最小者，保证结果确定。
"""

import logging
from datetime import datetime
from decimal import Decimal

from app.database import get_db
from app.services.money import from_cents, to_cents

logger = logging.getLogger(__name__)


class LoyaltyError(Exception):
    """等级操作异常。"""
    pass


class LoyaltyLevelNotFoundError(LoyaltyError):
    pass


def level_to_dict(row) -> dict:
    return {
        "id": row["id"],
        "name": row["name"],
        "min_spent": str(from_cents(row["min_spent_cents"])),
        "cashback_percent": float(row["cashback_percent"]),
        "discount_percent": float(row["discount_percent"]),
        "created_at": row["created_at"],
    }


def _validate_percent(name: str, value) -> float:
    value = float(value)
    if value < 0 or value > 100:
        raise LoyaltyError(f"{name} 必须在 0-100 之间")
    return value


class LoyaltyService:

    def level_for(self, total_spent: Decimal) -> dict | None:
        """返回累计消费对应的等级，没有任何等级满足时返回 None。"""
        db = get_db()
        try:
            row = db.execute(
                """SELECT * FROM loyalty_levels
                   WHERE min_spent_cents <= ?
                   ORDER BY min_spent_cents DESC, id ASC
                   LIMIT 1""",
                (to_cents(total_spent),),
            ).fetchone()
        finally:
            db.close()
        return level_to_dict(row) if row else None

    def get_user_level(self, user_id: int) -> dict | None:
        """返回用户当前持有的等级（可能为 None）。"""
        db = get_db()
        try:
            row = db.execute(
                """SELECT l.* FROM users u
                   JOIN loyalty_levels l ON l.id = u.loyalty_level_id
                   WHERE u.id = ?""",
                (user_id,),
            ).fetchone()
        finally:
            db.close()
        return level_to_dict(row) if row else None

    def recompute_user_level(self, user_id: int) -> dict | None:
        """
        按用户当前累计消费重算等级并写回。

        Returns:
            新等级；用户不存在或没有匹配等级时返回 None。
        """
        db = get_db()
        try:
            user = db.execute(
                "SELECT id, total_spent_cents, loyalty_level_id FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
            if not user:
                return None

            row = db.execute(
                """SELECT * FROM loyalty_levels
                   WHERE min_spent_cents <= ?
                   ORDER BY min_spent_cents DESC, id ASC
                   LIMIT 1""",
                (user["total_spent_cents"],),
            ).fetchone()
            new_id = row["id"] if row else None

            if new_id != user["loyalty_level_id"]:
                db.execute(
                    "UPDATE users SET loyalty_level_id = ?, updated_at = ? WHERE id = ?",
                    (new_id, datetime.now().strftime("%Y-%m-%d %H:%M:%S"), user_id),
                )
                db.commit()
                logger.info(
                    "用户等级变更: user_id=%s, %s -> %s",
                    user_id, user["loyalty_level_id"], new_id,
                )
        finally:
            db.close()
        return level_to_dict(row) if row else None

    # ── 等级管理 ──────────────────────────────────────────

    def list_levels(self) -> list[dict]:
        db = get_db()
        try:
            rows = db.execute(
                "SELECT * FROM loyalty_levels ORDER BY min_spent_cents ASC, id ASC"
            ).fetchall()
            return [level_to_dict(r) for r in rows]
        finally:
            db.close()

    def get_level(self, level_id: int) -> dict:
        db = get_db()
        try:
            row = db.execute("SELECT * FROM loyalty_levels WHERE id = ?", (level_id,)).fetchone()
        finally:
            db.close()
        if not row:
            raise LoyaltyLevelNotFoundError("等级不存在")
        return level_to_dict(row)

    def create_level(self, name: str, min_spent, cashback_percent=0, discount_percent=0) -> dict:
        if not name:
            raise LoyaltyError("等级名称不能为空")
        min_spent_cents = to_cents(min_spent)
        if min_spent_cents < 0:
            raise LoyaltyError("最低消费不能为负数")
        cashback = _validate_percent("返现比例", cashback_percent)
        discount = _validate_percent("折扣比例", discount_percent)

        db = get_db()
        try:
            cursor = db.execute(
                """INSERT INTO loyalty_levels (name, min_spent_cents, cashback_percent, discount_percent)
                   VALUES (?, ?, ?, ?)""",
                (name, min_spent_cents, cashback, discount),
            )
            db.commit()
            level_id = cursor.lastrowid
        except Exception as e:
            db.rollback()
            if "UNIQUE constraint failed" in str(e):
                raise LoyaltyError(f"等级名称 '{name}' 已存在") from e
            raise
        finally:
            db.close()
        logger.info("等级已创建: %s (min_spent=%s)", name, min_spent)
        return self.get_level(level_id)

    def update_level(self, level_id: int, data: dict) -> dict:
        fields = {}
        if data.get("name"):
            fields["name"] = data["name"]
        if data.get("min_spent") is not None:
            fields["min_spent_cents"] = to_cents(data["min_spent"])
            if fields["min_spent_cents"] < 0:
                raise LoyaltyError("最低消费不能为负数")
        if data.get("cashback_percent") is not None:
            fields["cashback_percent"] = _validate_percent("返现比例", data["cashback_percent"])
        if data.get("discount_percent") is not None:
            fields["discount_percent"] = _validate_percent("折扣比例", data["discount_percent"])

        self.get_level(level_id)
        if not fields:
            return self.get_level(level_id)

        fields["updated_at"] = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        set_sql = ", ".join(f"{k} = ?" for k in fields)
        db = get_db()
        try:
            db.execute(
                f"UPDATE loyalty_levels SET {set_sql} WHERE id = ?",
                list(fields.values()) + [level_id],
            )
            db.commit()
        except Exception as e:
            db.rollback()
            if "UNIQUE constraint failed" in str(e):
                raise LoyaltyError(f"等级名称 '{data['name']}' 已存在") from e
            raise
        finally:
            db.close()
        return self.get_level(level_id)

    def delete_level(self, level_id: int) -> int:
        """
        删除等级；持有该等级的用户等级引用置空，不阻止删除。

        Returns:
            被清空等级的用户数。
        """
        self.get_level(level_id)
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE users SET loyalty_level_id = NULL WHERE loyalty_level_id = ?",
                (level_id,),
            )
            affected = cursor.rowcount
            db.execute("DELETE FROM loyalty_levels WHERE id = ?", (level_id,))
            db.commit()
        finally:
            db.close()
        logger.info("等级已删除: id=%s, 受影响用户 %d 个", level_id, affected)
        return affected

    def users_by_level(self, level_id: int) -> list[dict]:
        db = get_db()
        try:
            rows = db.execute(
                """SELECT id, username, first_name, total_spent_cents, bonus_balance_cents
                   FROM users WHERE loyalty_level_id = ? ORDER BY id ASC""",
                (level_id,),
            ).fetchall()
        finally:
            db.close()
        return [
            {
                "id": r["id"],
                "username": r["username"],
                "first_name": r["first_name"],
                "total_spent": str(from_cents(r["total_spent_cents"])),
                "bonus_balance": str(from_cents(r["bonus_balance_cents"])),
            }
            for r in rows
        ]
