"""推荐计划服务：推荐奖励发放、推荐统计、排行榜。"""

import json
import logging
import os
from datetime import datetime
from decimal import Decimal

from app.database import get_db
from app.models.schemas import OrderStatus, TransactionStatus, TransactionType
from app.services import platform_config
from app.services.money import from_cents, percent_of, to_cents
from app.services.user_service import credit_bonus

logger = logging.getLogger(__name__)


def referral_link(code: str) -> str:
    bot = os.getenv("TELEGRAM_BOT_USERNAME", "esim_bot")
    return f"https://t.me/{bot}?start={code}"


class ReferralService:

    def award_referral_bonus(self, db, referrer_id: int, order_id: int, order_amount: Decimal) -> Decimal:
        """
        给推荐人记奖励余额并写入 REFERRAL_BONUS 交易，由调用方提交。

        推荐计划关闭或奖励为 0 时不做任何事，返回 0。
        """
        settings = platform_config.get_referral_settings()
        if not settings["enabled"]:
            return Decimal("0")
        bonus = percent_of(order_amount, settings["bonusPercent"])
        cents = to_cents(bonus)
        if cents <= 0:
            return Decimal("0")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        credit_bonus(db, referrer_id, cents)
        db.execute(
            """INSERT INTO transactions
               (user_id, order_id, type, status, amount_cents, metadata, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                referrer_id, order_id, TransactionType.REFERRAL_BONUS,
                TransactionStatus.SUCCEEDED, cents,
                json.dumps({"orderAmount": str(order_amount),
                            "bonusPercent": settings["bonusPercent"]}),
                now, now,
            ),
        )
        logger.info("推荐奖励: referrer=%s, order=%s, bonus=%s", referrer_id, order_id, bonus)
        return bonus

    def get_referral_stats(self, user_id: int) -> dict | None:
        db = get_db()
        try:
            user = db.execute(
                "SELECT id, referral_code FROM users WHERE id = ?", (user_id,)
            ).fetchone()
            if not user:
                return None

            earnings = db.execute(
                """SELECT COALESCE(SUM(amount_cents), 0) FROM transactions
                   WHERE user_id = ? AND type = ? AND status = ?""",
                (user_id, TransactionType.REFERRAL_BONUS, TransactionStatus.SUCCEEDED),
            ).fetchone()[0]

            rows = db.execute(
                """SELECT u.id, u.username, u.first_name, u.created_at,
                          COUNT(o.id) AS total_orders,
                          COALESCE(SUM(o.total_amount_cents), 0) AS spent_cents
                   FROM users u
                   LEFT JOIN orders o ON o.user_id = u.id AND o.status = ?
                   WHERE u.referred_by_id = ?
                   GROUP BY u.id
                   ORDER BY u.created_at DESC""",
                (OrderStatus.COMPLETED, user_id),
            ).fetchall()
        finally:
            db.close()

        return {
            "referral_code": user["referral_code"],
            "referral_link": referral_link(user["referral_code"]),
            "referrals_count": len(rows),
            "total_earnings": str(from_cents(earnings)),
            "referrals": [
                {
                    "id": r["id"],
                    "name": r["first_name"] or r["username"] or "Пользователь",
                    "joined_at": r["created_at"],
                    "total_orders": r["total_orders"],
                    "total_spent": str(from_cents(r["spent_cents"])),
                }
                for r in rows
            ],
        }

    def get_top_referrers(self, limit: int = 10) -> list[dict]:
        db = get_db()
        try:
            rows = db.execute(
                """SELECT r.id, r.username, r.first_name, r.bonus_balance_cents,
                          COUNT(u.id) AS referrals_count
                   FROM users r JOIN users u ON u.referred_by_id = r.id
                   GROUP BY r.id
                   ORDER BY referrals_count DESC, r.id ASC
                   LIMIT ?""",
                (limit,),
            ).fetchall()
        finally:
            db.close()
        return [
            {
                "id": r["id"],
                "username": r["username"],
                "first_name": r["first_name"],
                "referrals_count": r["referrals_count"],
                "bonus_balance": str(from_cents(r["bonus_balance_cents"])),
            }
            for r in rows
        ]
