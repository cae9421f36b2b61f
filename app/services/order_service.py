"""
订单服务模块：创建订单、履约、超时释放、后台取消/退款、查询。

状态机：
    PENDING → PAID → COMPLETED
    PENDING | PAID → FAILED
    后台操作 → CANCELLED / REFUNDED（终态）

- 创建订单时在同一次提交内预扣奖励余额（单条带下限条件的 UPDATE），防止并发下单重复使用
- 履约至多一次：先以比较并交换方式写入 fulfillment_started_at 占位，抢到占位的调用才会请求厂商
- 履约失败时订单置为 FAILED 并记录原因，不保留任何激活数据、返现或累计消费
"""

import json
import logging
import os
from datetime import datetime, timedelta

from app.database import get_db
from app.models.schemas import OrderStatus, TransactionStatus, TransactionType
from app.services import platform_config
from app.services.esim_provider import build_gateway_from_env
from app.services.loyalty_service import LoyaltyService
from app.services.money import from_cents, percent_of, to_cents
from app.services.notification_service import TelegramNotifier
from app.services.pagination import paginate
from app.services.referral_service import ReferralService
from app.services.user_service import credit_bonus, release_bonus, reserve_bonus

logger = logging.getLogger(__name__)

ORDER_EXPIRE_MINUTES = int(os.getenv("ORDER_EXPIRE_MINUTES", "30"))
MAX_QUANTITY = 10


class OrderCreateError(Exception):
    """订单创建失败（参数校验、商品下架、余额竞争）。"""
    pass


class OrderStateError(Exception):
    """订单当前状态不允许该操作。"""
    pass


class OrderNotFoundError(OrderStateError):
    pass


class OrderFulfillmentError(Exception):
    """厂商购买失败，订单已置为 FAILED。"""
    pass


def order_to_dict(row) -> dict:
    keys = row.keys()
    data = {
        "id": row["id"],
        "user_id": row["user_id"],
        "product_id": row["product_id"],
        "quantity": row["quantity"],
        "product_price": str(from_cents(row["product_price_cents"])),
        "discount": str(from_cents(row["discount_cents"])),
        "bonus_used": str(from_cents(row["bonus_used_cents"])),
        "total_amount": str(from_cents(row["total_amount_cents"])),
        "status": row["status"],
        "qr_code": row["qr_code"],
        "iccid": row["iccid"],
        "activation_code": row["activation_code"],
        "provider_order_id": row["provider_order_id"],
        "error_message": row["error_message"],
        "created_at": row["created_at"],
        "paid_at": row["paid_at"],
        "completed_at": row["completed_at"],
    }
    if "product_name" in keys:
        data["product"] = {
            "name": row["product_name"],
            "country": row["product_country"],
            "data_amount": row["product_data_amount"],
            "validity_days": row["product_validity_days"],
        }
    if "telegram_id" in keys:
        data["user"] = {
            "telegram_id": row["telegram_id"],
            "username": row["username"],
            "first_name": row["first_name"],
        }
    return data


_ORDER_SELECT = """SELECT o.*,
                          p.name AS product_name, p.country AS product_country,
                          p.data_amount AS product_data_amount,
                          p.validity_days AS product_validity_days,
                          u.telegram_id, u.username, u.first_name
                   FROM orders o
                   JOIN products p ON p.id = o.product_id
                   JOIN users u ON u.id = o.user_id"""


def mark_paid(db, order_id: int) -> bool:
    """PENDING → PAID（比较并交换），由调用方提交。"""
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    cursor = db.execute(
        """UPDATE orders SET status = ?, paid_at = ?, updated_at = ?
           WHERE id = ? AND status = ?""",
        (OrderStatus.PAID, now, now, order_id, OrderStatus.PENDING),
    )
    return cursor.rowcount == 1


def release_pending_order(db, order, new_status: str) -> bool:
    """
    PENDING → CANCELLED，并在同一事务内退回预扣的奖励余额、取消待支付交易。
    由调用方提交。
    """
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    cursor = db.execute(
        "UPDATE orders SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
        (new_status, now, order["id"], OrderStatus.PENDING),
    )
    if cursor.rowcount != 1:
        return False
    release_bonus(db, order["user_id"], order["bonus_used_cents"])
    db.execute(
        """UPDATE transactions SET status = ?, updated_at = ?
           WHERE order_id = ? AND type = ? AND status = ?""",
        (TransactionStatus.CANCELLED, now, order["id"],
         TransactionType.PAYMENT, TransactionStatus.PENDING),
    )
    return True


class OrderService:
    """订单服务：厂商网关、等级服务、通知服务均可注入。"""

    def __init__(self, gateway=None, loyalty=None, notifier=None, referrals=None):
        self._gateway = gateway
        self.loyalty = loyalty or LoyaltyService()
        self.notifier = notifier or TelegramNotifier()
        self.referrals = referrals or ReferralService()

    @property
    def gateway(self):
        if self._gateway is None:
            self._gateway = build_gateway_from_env()
        return self._gateway

    # ── 创建 ──────────────────────────────────────────────

    def create_order(self, user_id: int, product_id: int, quantity: int = 1, bonus_to_use=0) -> dict:
        """
        创建待支付订单。

        计算：
            base     = price * quantity
            discount = base * 等级折扣%（不超过 base）
            bonus    = min(bonus_to_use, 用户奖励余额, base - discount)
            total    = base - discount - bonus

        Raises:
            OrderCreateError: 参数无效、用户/商品不存在、商品下架、奖励余额被并发占用。
        """
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise OrderCreateError("购买数量无效")
        if quantity < 1 or quantity > MAX_QUANTITY:
            raise OrderCreateError(f"购买数量必须在 1-{MAX_QUANTITY} 之间")
        try:
            requested_bonus = to_cents(bonus_to_use or 0)
        except ValueError:
            raise OrderCreateError("奖励金额格式无效")
        if requested_bonus < 0:
            raise OrderCreateError("奖励金额不能为负数")

        db = get_db()
        try:
            user = db.execute(
                """SELECT u.id, u.bonus_balance_cents, l.discount_percent
                   FROM users u LEFT JOIN loyalty_levels l ON l.id = u.loyalty_level_id
                   WHERE u.id = ?""",
                (user_id,),
            ).fetchone()
            if not user:
                raise OrderCreateError("用户不存在")

            product = db.execute(
                "SELECT id, price, is_active FROM products WHERE id = ?", (product_id,)
            ).fetchone()
            if not product:
                raise OrderCreateError("商品不存在")
            if product["is_active"] != 1:
                raise OrderCreateError("商品已下架")

            price_cents = int(product["price"]) * 100
            base_cents = price_cents * quantity

            discount_cents = 0
            if user["discount_percent"]:
                discount_cents = to_cents(percent_of(from_cents(base_cents), user["discount_percent"]))
                discount_cents = min(discount_cents, base_cents)

            remaining = base_cents - discount_cents
            bonus_cents = min(requested_bonus, user["bonus_balance_cents"], remaining)
            total_cents = remaining - bonus_cents

            if not reserve_bonus(db, user_id, bonus_cents):
                db.rollback()
                raise OrderCreateError("奖励余额已变动，请重试")

            now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            try:
                cursor = db.execute(
                    """INSERT INTO orders
                       (user_id, product_id, quantity, product_price_cents, discount_cents,
                        bonus_used_cents, total_amount_cents, status, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (user_id, product_id, quantity, price_cents, discount_cents,
                     bonus_cents, total_cents, OrderStatus.PENDING, now, now),
                )
                db.commit()
            except Exception as e:
                db.rollback()
                raise OrderCreateError(f"订单创建失败: {e}")
            order_id = cursor.lastrowid
        finally:
            db.close()

        logger.info(
            "订单已创建: id=%s, user=%s, product=%s, qty=%s, discount=%s, bonus=%s, total=%s",
            order_id, user_id, product_id, quantity,
            from_cents(discount_cents), from_cents(bonus_cents), from_cents(total_cents),
        )
        return self.get_order(order_id)

    # ── 履约 ──────────────────────────────────────────────

    def _claim_fulfillment(self, order_id: int) -> bool:
        """抢占履约：仅当订单为 PAID 且尚未开始履约时成功。"""
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE orders SET fulfillment_started_at = ?, updated_at = ?
                   WHERE id = ? AND status = ? AND fulfillment_started_at IS NULL""",
                (now, now, order_id, OrderStatus.PAID),
            )
            db.commit()
            return cursor.rowcount == 1
        finally:
            db.close()

    def _mark_failed(self, order_id: int, message: str) -> None:
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            db.execute(
                """UPDATE orders SET status = ?, error_message = ?, updated_at = ?
                   WHERE id = ? AND status IN (?, ?)""",
                (OrderStatus.FAILED, message[:500], now, order_id,
                 OrderStatus.PENDING, OrderStatus.PAID),
            )
            db.commit()
        finally:
            db.close()
        logger.error("订单履约失败: id=%s, %s", order_id, message)

    def _load_for_fulfillment(self, order_id: int):
        db = get_db()
        try:
            return db.execute(
                """SELECT o.*, p.provider_id, u.telegram_id, u.referred_by_id,
                          l.cashback_percent
                   FROM orders o
                   JOIN products p ON p.id = o.product_id
                   JOIN users u ON u.id = o.user_id
                   LEFT JOIN loyalty_levels l ON l.id = u.loyalty_level_id
                   WHERE o.id = ?""",
                (order_id,),
            ).fetchone()
        finally:
            db.close()

    def fulfill(self, order_id: int) -> dict:
        """
        履约：向厂商购买 eSIM 并完成订单。

        - 订单必须为 PAID，否则抛出 OrderStateError 且无副作用
        - 同一订单只有第一次抢到占位的调用会请求厂商，其余调用被拒绝
        - 成功：PAID → COMPLETED，保存激活数据，记返现、累计消费、推荐奖励，重算等级
        - 失败：PAID → FAILED，记录原因

        Raises:
            OrderNotFoundError / OrderStateError / OrderFulfillmentError
        """
        order = self._load_for_fulfillment(order_id)
        if not order:
            raise OrderNotFoundError("订单不存在")
        if order["status"] != OrderStatus.PAID:
            raise OrderStateError(f"订单状态为 {order['status']}，不能履约")
        if not self._claim_fulfillment(order_id):
            raise OrderStateError("订单已在履约或已履约")

        try:
            result = self.gateway.purchase(order["provider_id"], order["quantity"])
        except Exception as e:
            self._mark_failed(order_id, str(e))
            self.notifier.notify_order_failed(order["telegram_id"], {"id": order_id})
            raise OrderFulfillmentError(f"厂商购买失败: {e}") from e

        try:
            self._complete(order, result)
        except Exception as e:
            # 厂商已出货但本地落库失败，需人工对账
            logger.error(
                "订单完成落库失败，需人工对账: id=%s, provider_ref=%s, iccid=%s, %s",
                order_id, result.order_ref, result.iccid, e,
            )
            self._mark_failed(order_id, f"完成订单失败: {e}")
            self.notifier.notify_order_failed(order["telegram_id"], {"id": order_id})
            raise OrderFulfillmentError(f"完成订单失败: {e}") from e

        self.loyalty.recompute_user_level(order["user_id"])
        completed = self.get_order(order_id)
        self.notifier.notify_order_completed(order["telegram_id"], completed, completed.get("product", {}))
        return completed

    def _complete(self, order, result) -> None:
        """在同一次提交内：订单置 COMPLETED、返现、累计消费、推荐奖励。"""
        order_id = order["id"]
        user_id = order["user_id"]
        total = from_cents(order["total_amount_cents"])
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        cashback_enabled = platform_config.get_flag(platform_config.CASHBACK_ENABLED_KEY)

        db = get_db()
        try:
            cursor = db.execute(
                """UPDATE orders
                   SET status = ?, qr_code = ?, iccid = ?, activation_code = ?,
                       provider_order_id = ?, error_message = NULL,
                       completed_at = ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (OrderStatus.COMPLETED, result.qr_payload, result.iccid,
                 result.activation_code, result.order_ref, now, now,
                 order_id, OrderStatus.PAID),
            )
            if cursor.rowcount != 1:
                raise OrderStateError("订单状态已被修改，无法完成")

            cashback_cents = 0
            if cashback_enabled and order["cashback_percent"]:
                cashback_cents = to_cents(percent_of(total, order["cashback_percent"]))
            if cashback_cents > 0:
                credit_bonus(db, user_id, cashback_cents)
                db.execute(
                    """INSERT INTO transactions
                       (user_id, order_id, type, status, amount_cents, metadata, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (user_id, order_id, TransactionType.CASHBACK, TransactionStatus.SUCCEEDED,
                     cashback_cents,
                     json.dumps({"cashbackPercent": float(order["cashback_percent"])}),
                     now, now),
                )

            db.execute(
                """UPDATE users SET total_spent_cents = total_spent_cents + ?, updated_at = ?
                   WHERE id = ?""",
                (order["total_amount_cents"], now, user_id),
            )

            if order["referred_by_id"]:
                self.referrals.award_referral_bonus(db, order["referred_by_id"], order_id, total)

            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "订单已完成: id=%s, provider=%s, ref=%s, cashback=%s",
            order_id, result.provider, result.order_ref, from_cents(cashback_cents),
        )

    # ── 超时释放 / 后台操作 ───────────────────────────────

    def expire_pending_orders(self, minutes: int | None = None) -> int:
        """
        将超过 ORDER_EXPIRE_MINUTES 未支付的订单置为 CANCELLED，并退回预扣的奖励余额。

        Returns:
            本次释放的订单数。
        """
        minutes = ORDER_EXPIRE_MINUTES if minutes is None else minutes
        cutoff = (datetime.now() - timedelta(minutes=minutes)).strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            rows = db.execute(
                "SELECT id, user_id, bonus_used_cents FROM orders WHERE status = ? AND created_at < ?",
                (OrderStatus.PENDING, cutoff),
            ).fetchall()
            expired = 0
            for row in rows:
                if release_pending_order(db, row, OrderStatus.CANCELLED):
                    expired += 1
            db.commit()
        finally:
            db.close()

        if expired:
            logger.info("已释放 %d 笔超时未支付订单", expired)
        return expired

    def cancel_order(self, order_id: int) -> dict:
        """后台取消：仅 PENDING 订单，退回预扣奖励余额。"""
        db = get_db()
        try:
            row = db.execute(
                "SELECT id, user_id, status, bonus_used_cents FROM orders WHERE id = ?",
                (order_id,),
            ).fetchone()
            if not row:
                raise OrderNotFoundError("订单不存在")
            if not release_pending_order(db, row, OrderStatus.CANCELLED):
                raise OrderStateError(f"订单状态为 {row['status']}，只能取消待支付订单")
            db.commit()
        finally:
            db.close()
        logger.info("订单已取消: id=%s", order_id)
        return self.get_order(order_id)

    def mark_refunded(self, order_id: int, reason: str | None = None) -> dict:
        """后台标记退款：仅 PAID/COMPLETED/FAILED 订单，写入一条 REFUND 交易。"""
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            row = db.execute(
                "SELECT id, user_id, status, total_amount_cents FROM orders WHERE id = ?",
                (order_id,),
            ).fetchone()
            if not row:
                raise OrderNotFoundError("订单不存在")
            cursor = db.execute(
                """UPDATE orders SET status = ?, updated_at = ?
                   WHERE id = ? AND status IN (?, ?, ?)""",
                (OrderStatus.REFUNDED, now, order_id,
                 OrderStatus.PAID, OrderStatus.COMPLETED, OrderStatus.FAILED),
            )
            if cursor.rowcount != 1:
                raise OrderStateError(f"订单状态为 {row['status']}，不能退款")
            db.execute(
                """INSERT INTO transactions
                   (user_id, order_id, type, status, amount_cents, metadata, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (row["user_id"], order_id, TransactionType.REFUND, TransactionStatus.SUCCEEDED,
                 row["total_amount_cents"], json.dumps({"reason": reason or ""}), now, now),
            )
            db.commit()
        finally:
            db.close()
        logger.info("订单已标记退款: id=%s, reason=%s", order_id, reason)
        return self.get_order(order_id)

    # ── 查询 ──────────────────────────────────────────────

    def get_order(self, order_id: int) -> dict:
        db = get_db()
        try:
            row = db.execute(f"{_ORDER_SELECT} WHERE o.id = ?", (order_id,)).fetchone()
        finally:
            db.close()
        if not row:
            raise OrderNotFoundError("订单不存在")
        return order_to_dict(row)

    def list_user_orders(self, user_id: int, limit: int = 50) -> list[dict]:
        db = get_db()
        try:
            rows = db.execute(
                f"{_ORDER_SELECT} WHERE o.user_id = ? ORDER BY o.created_at DESC, o.id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        finally:
            db.close()
        return [order_to_dict(r) for r in rows]

    def list_orders(self, status: str | None = None, page: int = 1, limit: int = 20) -> dict:
        where_sql = ""
        params: list = []
        if status:
            if status not in OrderStatus.ALL:
                raise OrderStateError(f"未知的订单状态: {status}")
            where_sql = " WHERE o.status = ?"
            params.append(status)
        db = get_db()
        try:
            return paginate(
                db,
                f"SELECT COUNT(*) FROM orders o{where_sql}",
                f"{_ORDER_SELECT}{where_sql} ORDER BY o.created_at DESC, o.id DESC",
                params, page, limit, order_to_dict,
            )
        finally:
            db.close()
