"""
支付服务：生成 Robokassa 支付跳转链接、处理支付结果通知（ResultURL）、交易查询。

支付结果通知处理流程：
1. 以 Password2 重新计算 MD5(OutSum:InvId:Password2)，与 SignatureValue 比较（忽略大小写）
2. 以 InvId 查找 PAYMENT 交易，OutSum 必须与交易金额精确相等（到分）
3. 交易已为 SUCCEEDED 时视为重放，直接确认，不做任何修改
4. 交易 → SUCCEEDED、订单 PENDING → PAID（同一次提交），然后履约
5. 履约异常只记录日志，仍向支付方返回 OK<InvId>，避免重复通知和重复扣款

任一校验失败均不修改任何状态。
"""

import logging
import os
from datetime import datetime
from decimal import Decimal, InvalidOperation
from urllib.parse import urlencode

from app.database import get_db
from app.models.schemas import OrderStatus, TransactionStatus, TransactionType
from app.services import platform_config
from app.services.money import format_amount, from_cents
from app.services.order_service import OrderService, mark_paid
from app.services.pagination import paginate
from app.services.sign import generate_payment_sign, verify_result_sign

logger = logging.getLogger(__name__)

ROBOKASSA_URL = "https://auth.robokassa.ru/Merchant/Index.aspx"
PAYMENT_PROVIDER = "robokassa"


class PaymentError(Exception):
    """创建支付失败（订单状态不符、金额为 0、支付网关未配置）。"""
    pass


class PaymentIntegrityError(Exception):
    """支付结果通知校验失败：参数缺失、签名错误、未知发票、金额不符。"""
    pass


def transaction_to_dict(row) -> dict:
    return {
        "id": row["id"],
        "user_id": row["user_id"],
        "order_id": row["order_id"],
        "type": row["type"],
        "status": row["status"],
        "amount": str(from_cents(row["amount_cents"])),
        "payment_provider": row["payment_provider"],
        "payment_id": row["payment_id"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


class PaymentService:

    def __init__(self, orders: OrderService | None = None):
        self.orders = orders or OrderService()

    def _credentials(self) -> dict:
        creds = platform_config.get_payment_credentials()
        if not creds:
            raise PaymentError("支付网关未配置")
        return creds

    # ── 创建支付 ──────────────────────────────────────────

    def create_payment(self, order_id: int) -> dict:
        """
        为待支付订单生成支付跳转链接。

        同一订单已有待支付交易时复用其发票号，不重复建交易。

        Returns:
            {"payment_url", "inv_id", "amount"}

        Raises:
            PaymentError: 订单不存在、状态不是 PENDING、金额为 0、网关未配置。
        """
        creds = self._credentials()
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        db = get_db()
        try:
            order = db.execute(
                "SELECT id, user_id, status, total_amount_cents FROM orders WHERE id = ?",
                (order_id,),
            ).fetchone()
            if not order:
                raise PaymentError("订单不存在")
            if order["status"] != OrderStatus.PENDING:
                raise PaymentError(f"订单状态为 {order['status']}，不能发起支付")
            if order["total_amount_cents"] <= 0:
                raise PaymentError("订单金额为 0，无需在线支付")

            tx = db.execute(
                """SELECT id FROM transactions
                   WHERE order_id = ? AND type = ? AND status = ? AND amount_cents = ?
                   ORDER BY id DESC LIMIT 1""",
                (order_id, TransactionType.PAYMENT, TransactionStatus.PENDING,
                 order["total_amount_cents"]),
            ).fetchone()
            if tx:
                inv_id = tx["id"]
            else:
                cursor = db.execute(
                    """INSERT INTO transactions
                       (user_id, order_id, type, status, amount_cents, payment_provider,
                        created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (order["user_id"], order_id, TransactionType.PAYMENT,
                     TransactionStatus.PENDING, order["total_amount_cents"],
                     PAYMENT_PROVIDER, now, now),
                )
                inv_id = cursor.lastrowid
                db.execute(
                    "UPDATE transactions SET payment_id = ? WHERE id = ?",
                    (str(inv_id), inv_id),
                )
                db.commit()
            amount = from_cents(order["total_amount_cents"])
        finally:
            db.close()

        out_sum = format_amount(amount)
        params = {
            "MerchantLogin": creds["merchant_login"],
            "OutSum": out_sum,
            "InvId": inv_id,
            "Description": f"eSIM заказ #{order_id}",
            "SignatureValue": generate_payment_sign(
                creds["merchant_login"], out_sum, inv_id, creds["password1"]
            ),
            "Culture": "ru",
        }
        if os.getenv("ROBOKASSA_TEST_MODE", "0") == "1":
            params["IsTest"] = 1

        logger.info("支付链接已生成: order=%s, inv_id=%s, amount=%s", order_id, inv_id, out_sum)
        return {
            "payment_url": f"{ROBOKASSA_URL}?{urlencode(params)}",
            "inv_id": inv_id,
            "amount": out_sum,
        }

    # ── 支付结果通知 ──────────────────────────────────────

    def handle_webhook(self, payload: dict) -> str:
        """
        处理支付结果通知。

        Returns:
            应答正文 "OK<InvId>"。

        Raises:
            PaymentIntegrityError: 任一校验失败，状态未被修改。
            PaymentError: 支付网关未配置。
        """
        out_sum = str(payload.get("OutSum") or "").strip()
        inv_id_raw = str(payload.get("InvId") or "").strip()
        signature = str(payload.get("SignatureValue") or "").strip()
        if not out_sum or not inv_id_raw or not signature:
            raise PaymentIntegrityError("缺少必要参数")

        creds = self._credentials()
        if not verify_result_sign(out_sum, inv_id_raw, creds["password2"], signature):
            logger.warning("支付通知签名错误: InvId=%s", inv_id_raw)
            raise PaymentIntegrityError("签名错误")

        try:
            inv_id = int(inv_id_raw)
            paid_amount = Decimal(out_sum)
        except (ValueError, InvalidOperation):
            raise PaymentIntegrityError("参数格式错误")

        db = get_db()
        try:
            tx = db.execute(
                "SELECT * FROM transactions WHERE id = ? AND type = ?",
                (inv_id, TransactionType.PAYMENT),
            ).fetchone()
            if not tx:
                logger.warning("支付通知发票不存在: InvId=%s", inv_id)
                raise PaymentIntegrityError("未知发票")

            expected = from_cents(tx["amount_cents"])
            if paid_amount != expected:
                logger.warning(
                    "支付通知金额不符: InvId=%s, expected=%s, got=%s",
                    inv_id, expected, out_sum,
                )
                raise PaymentIntegrityError("金额不符")

            if tx["status"] == TransactionStatus.SUCCEEDED:
                logger.info("重复的支付通知，忽略: InvId=%s", inv_id)
                return f"OK{inv_id}"

            now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            cursor = db.execute(
                "UPDATE transactions SET status = ?, updated_at = ? WHERE id = ? AND status != ?",
                (TransactionStatus.SUCCEEDED, now, inv_id, TransactionStatus.SUCCEEDED),
            )
            if cursor.rowcount != 1:
                db.rollback()
                logger.info("支付通知已由并发请求处理: InvId=%s", inv_id)
                return f"OK{inv_id}"

            order_id = tx["order_id"]
            paid = mark_paid(db, order_id) if order_id else False
            db.commit()
        finally:
            db.close()

        logger.info("支付成功: InvId=%s, order=%s, amount=%s", inv_id, order_id, out_sum)

        if not paid:
            # 订单已超时取消或被后台处理，钱已收到，需人工对账
            logger.error(
                "已收款但订单不是待支付状态，需人工处理: InvId=%s, order=%s", inv_id, order_id
            )
            return f"OK{inv_id}"

        try:
            self.orders.fulfill(order_id)
        except Exception as e:
            logger.error("支付后履约失败: order=%s, %s", order_id, e)

        return f"OK{inv_id}"

    # ── 查询 ──────────────────────────────────────────────

    def list_transactions(
        self,
        status: str | None = None,
        tx_type: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        where = []
        params: list = []
        if status:
            if status not in TransactionStatus.ALL:
                raise PaymentError(f"未知的交易状态: {status}")
            where.append("status = ?")
            params.append(status)
        if tx_type:
            if tx_type not in TransactionType.ALL:
                raise PaymentError(f"未知的交易类型: {tx_type}")
            where.append("type = ?")
            params.append(tx_type)
        where_sql = f" WHERE {' AND '.join(where)}" if where else ""
        db = get_db()
        try:
            return paginate(
                db,
                f"SELECT COUNT(*) FROM transactions{where_sql}",
                f"SELECT * FROM transactions{where_sql} ORDER BY created_at DESC, id DESC",
                params, page, limit, transaction_to_dict,
            )
        finally:
            db.close()

    def list_user_transactions(self, user_id: int, limit: int = 50) -> list[dict]:
        db = get_db()
        try:
            rows = db.execute(
                """SELECT * FROM transactions WHERE user_id = ?
                   ORDER BY created_at DESC, id DESC LIMIT ?""",
                (user_id, limit),
            ).fetchall()
        finally:
            db.close()
        return [transaction_to_dict(r) for r in rows]
