"""
管理后台路由：认证（登录）、仪表盘、用户、商品（含批量操作）、订单、交易、
忠诚度等级、推荐计划、系统设置、厂商管理。
"""

import csv
import io
import logging
from datetime import date, timedelta
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from app.database import get_db
from app.models.schemas import OrderStatus
from app.services import platform_config
from app.services.auth import authenticate, change_password, get_current_admin, require_super_admin
from app.services.catalog_sync import CatalogSynchronizer
from app.services.esim_provider import AllProvidersFailedError, build_gateway_from_env
from app.services.loyalty_service import LoyaltyError, LoyaltyLevelNotFoundError, LoyaltyService
from app.services.money import to_cents
from app.services.order_service import (
    OrderFulfillmentError,
    OrderNotFoundError,
    OrderService,
    OrderStateError,
)
from app.services.payment_service import PaymentError, PaymentService
from app.services.platform_config import PlatformConfigError
from app.services.pricing import PricingPolicy
from app.services.product_service import ProductError, ProductNotFoundError, ProductService
from app.services.referral_service import ReferralService
from app.services.user_service import UserError, UserNotFoundError, UserService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin")


def _error(msg: str, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"code": -1, "msg": msg})


class LoginRequest(BaseModel):
    email: str
    password: str


@router.post("/auth/login")
async def login(body: LoginRequest):
    """
    管理员登录。

    成功返回 {code: 1, token: "...", admin: {...}}，
    失败返回 {code: -1, msg: "..."}。
    """
    try:
        return JSONResponse(content=authenticate(body.email, body.password))
    except ValueError as e:
        return _error(str(e))


# ── 仪表盘 ────────────────────────────────────────────────


def _query_day_stats(db, day_str: str) -> dict:
    """某天的订单数、完成数、完成金额（整数分求和）。"""
    row = db.execute(
        """
        SELECT
            COUNT(*)                                                     AS total,
            SUM(CASE WHEN status = 'COMPLETED' THEN 1 ELSE 0 END)        AS completed,
            COALESCE(SUM(CASE WHEN status = 'COMPLETED' THEN total_amount_cents ELSE 0 END), 0) AS amount_cents
        FROM orders
        WHERE date(created_at) = ?
        """,
        (day_str,),
    ).fetchone()
    return {
        "total": row["total"] or 0,
        "completed": row["completed"] or 0,
        "amount": round((row["amount_cents"] or 0) / 100, 2),
    }


@router.get("/dashboard")
async def dashboard(admin: dict = Depends(get_current_admin)):
    """仪表盘：总览、近 7 天趋势、热门商品与国家。"""
    db = get_db()
    try:
        return JSONResponse(content=_render_dashboard(db))
    finally:
        db.close()


def _render_dashboard(db) -> dict:
    today = date.today()

    users_count = db.execute("SELECT COUNT(*) FROM users").fetchone()[0]
    total_row = db.execute(
        """
        SELECT
            COUNT(*)                                                     AS total,
            SUM(CASE WHEN status = 'COMPLETED' THEN 1 ELSE 0 END)        AS completed,
            COALESCE(SUM(CASE WHEN status = 'COMPLETED' THEN total_amount_cents ELSE 0 END), 0) AS revenue_cents
        FROM orders
        """
    ).fetchone()
    total_orders = total_row["total"] or 0
    completed = total_row["completed"] or 0

    chart_labels = []
    chart_order_counts = []
    chart_amounts = []
    for i in range(6, -1, -1):
        d = today - timedelta(days=i)
        stats = _query_day_stats(db, d.isoformat())
        chart_labels.append(d.strftime("%m-%d"))
        chart_order_counts.append(stats["total"])
        chart_amounts.append(stats["amount"])

    top_products = db.execute(
        """SELECT p.id, p.name, p.country, COUNT(o.id) AS orders,
                  COALESCE(SUM(o.total_amount_cents), 0) AS revenue_cents
           FROM orders o JOIN products p ON p.id = o.product_id
           WHERE o.status = 'COMPLETED'
           GROUP BY p.id ORDER BY orders DESC, revenue_cents DESC LIMIT 5"""
    ).fetchall()
    top_countries = db.execute(
        """SELECT p.country, COUNT(o.id) AS orders
           FROM orders o JOIN products p ON p.id = o.product_id
           WHERE o.status = 'COMPLETED'
           GROUP BY p.country ORDER BY orders DESC LIMIT 5"""
    ).fetchall()

    return {
        "code": 1,
        "overview": {
            "users": users_count,
            "orders": total_orders,
            "completed_orders": completed,
            "conversion_rate": round(completed / total_orders * 100, 2) if total_orders else 0,
            "revenue": round((total_row["revenue_cents"] or 0) / 100, 2),
        },
        "today_stats": _query_day_stats(db, today.isoformat()),
        "chart": {
            "labels": chart_labels,
            "order_counts": chart_order_counts,
            "amounts": chart_amounts,
        },
        "top_products": [
            {
                "id": r["id"],
                "name": r["name"],
                "country": r["country"],
                "orders": r["orders"],
                "revenue": round(r["revenue_cents"] / 100, 2),
            }
            for r in top_products
        ],
        "top_countries": [{"country": r["country"], "orders": r["orders"]} for r in top_countries],
    }


# ── 用户管理 ────────────────────────────────────────────────


class AdjustBonusRequest(BaseModel):
    amount: Decimal


@router.get("/users")
async def user_list(
    admin: dict = Depends(get_current_admin),
    search: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    return JSONResponse(content={"code": 1, **UserService().list_users(page, limit, search)})


@router.get("/users/{user_id}")
async def user_detail(user_id: int, admin: dict = Depends(get_current_admin)):
    try:
        stats = UserService().get_user_stats(user_id)
    except UserNotFoundError as e:
        return _error(str(e), 404)
    return JSONResponse(content={"code": 1, **stats})


@router.post("/users/{user_id}/bonus")
async def adjust_user_bonus(
    user_id: int, body: AdjustBonusRequest, admin: dict = Depends(get_current_admin)
):
    """手动调整奖励余额，正数为增加，负数为扣减。"""
    try:
        user = UserService().adjust_bonus(user_id, to_cents(body.amount))
    except UserNotFoundError as e:
        return _error(str(e), 404)
    except UserError as e:
        return _error(str(e))
    logger.info("管理员 %s 调整奖励余额: user=%s, amount=%s", admin.get("sub"), user_id, body.amount)
    return JSONResponse(content={"code": 1, "user": user})


# ── 商品管理 ────────────────────────────────────────────────


class ProductRequest(BaseModel):
    provider_id: str | None = None
    country: str | None = None
    region: str | None = None
    name: str | None = None
    data_amount: str | None = None
    validity_days: int | None = None
    provider_price: int | None = None
    price: int | None = None
    markup_percent: float | None = None
    is_active: bool | None = None
    is_unlimited: bool | None = None
    badge: str | None = None
    badge_color: str | None = None


class BulkToggleRequest(BaseModel):
    ids: list[int]
    is_active: bool


class BulkToggleByTypeRequest(BaseModel):
    tariff_type: str
    is_active: bool


class BulkBadgeRequest(BaseModel):
    ids: list[int]
    badge: str | None = None
    badge_color: str | None = None


class BulkMarkupRequest(BaseModel):
    ids: list[int]
    markup_percent: float


@router.get("/products")
async def product_list(
    admin: dict = Depends(get_current_admin),
    country: str | None = Query(None),
    type: str | None = Query(None),
    is_active: bool | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    try:
        result = ProductService().list_products(country, is_active, type, page, limit)
    except ProductError as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, **result})


@router.post("/products")
async def create_product(body: ProductRequest, admin: dict = Depends(get_current_admin)):
    try:
        product = ProductService().create_product(body.model_dump(exclude_none=True))
    except ProductError as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, "product": product})


@router.put("/products/{product_id}")
async def update_product(
    product_id: int, body: ProductRequest, admin: dict = Depends(get_current_admin)
):
    try:
        product = ProductService().update_product(product_id, body.model_dump(exclude_none=True))
    except ProductNotFoundError as e:
        return _error(str(e), 404)
    return JSONResponse(content={"code": 1, "product": product})


@router.delete("/products/{product_id}")
async def delete_product(product_id: int, admin: dict = Depends(get_current_admin)):
    try:
        product = ProductService().delete_product(product_id)
    except ProductNotFoundError as e:
        return _error(str(e), 404)
    return JSONResponse(content={"code": 1, "product": product})


@router.post("/products/bulk/toggle")
async def bulk_toggle(body: BulkToggleRequest, admin: dict = Depends(get_current_admin)):
    count = ProductService().bulk_toggle_active(body.ids, body.is_active)
    return JSONResponse(content={"code": 1, "updated": count})


@router.post("/products/bulk/toggle-by-type")
async def bulk_toggle_by_type(body: BulkToggleByTypeRequest, admin: dict = Depends(get_current_admin)):
    try:
        count = ProductService().bulk_toggle_by_type(body.tariff_type, body.is_active)
    except ProductError as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, "updated": count})


@router.post("/products/bulk/badge")
async def bulk_badge(body: BulkBadgeRequest, admin: dict = Depends(get_current_admin)):
    count = ProductService().bulk_set_badge(body.ids, body.badge, body.badge_color)
    return JSONResponse(content={"code": 1, "updated": count})


@router.post("/products/bulk/markup")
async def bulk_markup(body: BulkMarkupRequest, admin: dict = Depends(get_current_admin)):
    try:
        count = ProductService().bulk_set_markup(body.ids, body.markup_percent)
    except ProductError as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, "updated": count})


# ── 订单管理 ────────────────────────────────────────────────


class RefundRequest(BaseModel):
    reason: str | None = None


@router.get("/orders")
async def order_list(
    admin: dict = Depends(get_current_admin),
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    try:
        result = OrderService().list_orders(status, page, limit)
    except OrderStateError as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, **result})


@router.get("/orders/export")
async def export_orders(
    admin: dict = Depends(get_current_admin),
    status: str | None = Query(None),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
):
    """导出订单为 CSV 文件。"""
    conditions = []
    params = []
    if status:
        conditions.append("o.status = ?")
        params.append(status)
    if start_date:
        conditions.append("o.created_at >= ?")
        params.append(f"{start_date} 00:00:00")
    if end_date:
        conditions.append("o.created_at <= ?")
        params.append(f"{end_date} 23:59:59")
    where_clause = " AND ".join(conditions) if conditions else "1=1"

    db = get_db()
    try:
        rows = db.execute(
            f"""SELECT o.id, u.telegram_id, p.name AS product_name, p.country, o.quantity,
                       o.product_price_cents, o.discount_cents, o.bonus_used_cents,
                       o.total_amount_cents, o.status, o.iccid, o.created_at, o.paid_at,
                       o.completed_at
                FROM orders o
                JOIN users u ON u.id = o.user_id
                JOIN products p ON p.id = o.product_id
                WHERE {where_clause}
                ORDER BY o.created_at DESC""",
            params,
        ).fetchall()
    finally:
        db.close()

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([
        "订单ID", "Telegram ID", "商品", "国家", "数量", "单价", "折扣", "奖励抵扣",
        "实付金额", "状态", "ICCID", "创建时间", "支付时间", "完成时间",
    ])
    for r in rows:
        writer.writerow([
            r["id"], r["telegram_id"], r["product_name"], r["country"], r["quantity"],
            f"{r['product_price_cents'] / 100:.2f}", f"{r['discount_cents'] / 100:.2f}",
            f"{r['bonus_used_cents'] / 100:.2f}", f"{r['total_amount_cents'] / 100:.2f}",
            r["status"], r["iccid"] or "", r["created_at"], r["paid_at"] or "",
            r["completed_at"] or "",
        ])

    output.seek(0)
    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=orders.csv"},
    )


@router.get("/orders/{order_id}")
async def order_detail(order_id: int, admin: dict = Depends(get_current_admin)):
    try:
        order = OrderService().get_order(order_id)
    except OrderNotFoundError as e:
        return _error(str(e), 404)
    return JSONResponse(content={"code": 1, "order": order})


@router.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: int, admin: dict = Depends(get_current_admin)):
    try:
        order = OrderService().cancel_order(order_id)
    except OrderNotFoundError as e:
        return _error(str(e), 404)
    except OrderStateError as e:
        return _error(str(e))
    logger.info("管理员 %s 取消订单: %s", admin.get("sub"), order_id)
    return JSONResponse(content={"code": 1, "msg": "订单已取消", "order": order})


@router.post("/orders/{order_id}/refund")
async def refund_order(
    order_id: int, body: RefundRequest, admin: dict = Depends(get_current_admin)
):
    try:
        order = OrderService().mark_refunded(order_id, body.reason)
    except OrderNotFoundError as e:
        return _error(str(e), 404)
    except OrderStateError as e:
        return _error(str(e))
    logger.info("管理员 %s 标记退款: %s", admin.get("sub"), order_id)
    return JSONResponse(content={"code": 1, "msg": "订单已标记退款", "order": order})


@router.post("/orders/{order_id}/fulfill")
def fulfill_order(order_id: int, admin: dict = Depends(get_current_admin)):
    """手动履约：仅对尚未开始履约的 PAID 订单生效。"""
    try:
        order = OrderService().fulfill(order_id)
    except OrderNotFoundError as e:
        return _error(str(e), 404)
    except (OrderStateError, OrderFulfillmentError) as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, "order": order})


# ── 交易 ────────────────────────────────────────────────────


@router.get("/transactions")
async def transaction_list(
    admin: dict = Depends(get_current_admin),
    status: str | None = Query(None),
    type: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    try:
        result = PaymentService().list_transactions(status, type, page, limit)
    except PaymentError as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, **result})


# ── 忠诚度等级 ──────────────────────────────────────────────


class LevelRequest(BaseModel):
    name: str | None = None
    min_spent: Decimal | None = None
    cashback_percent: float | None = None
    discount_percent: float | None = None


@router.get("/loyalty/levels")
async def level_list(admin: dict = Depends(get_current_admin)):
    return JSONResponse(content={"code": 1, "levels": LoyaltyService().list_levels()})


@router.post("/loyalty/levels")
async def create_level(body: LevelRequest, admin: dict = Depends(get_current_admin)):
    try:
        level = LoyaltyService().create_level(
            body.name, body.min_spent or 0, body.cashback_percent or 0, body.discount_percent or 0
        )
    except LoyaltyError as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, "level": level})


@router.put("/loyalty/levels/{level_id}")
async def update_level(level_id: int, body: LevelRequest, admin: dict = Depends(get_current_admin)):
    try:
        level = LoyaltyService().update_level(level_id, body.model_dump(exclude_none=True))
    except LoyaltyLevelNotFoundError as e:
        return _error(str(e), 404)
    except LoyaltyError as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, "level": level})


@router.delete("/loyalty/levels/{level_id}")
async def delete_level(level_id: int, admin: dict = Depends(get_current_admin)):
    try:
        affected = LoyaltyService().delete_level(level_id)
    except LoyaltyLevelNotFoundError as e:
        return _error(str(e), 404)
    return JSONResponse(content={"code": 1, "msg": "等级已删除", "affected_users": affected})


@router.get("/loyalty/levels/{level_id}/users")
async def level_users(level_id: int, admin: dict = Depends(get_current_admin)):
    return JSONResponse(content={"code": 1, "users": LoyaltyService().users_by_level(level_id)})


# ── 推荐计划 ────────────────────────────────────────────────


class ReferralSettingsRequest(BaseModel):
    bonus_percent: float
    min_payout: float
    enabled: bool


@router.get("/referrals/top")
async def top_referrers(
    admin: dict = Depends(get_current_admin), limit: int = Query(10, ge=1, le=100)
):
    return JSONResponse(content={"code": 1, "referrers": ReferralService().get_top_referrers(limit)})


@router.get("/settings/referral")
async def get_referral_settings(admin: dict = Depends(get_current_admin)):
    return JSONResponse(content={"code": 1, **platform_config.get_referral_settings()})


@router.put("/settings/referral")
async def update_referral_settings(
    body: ReferralSettingsRequest, admin: dict = Depends(get_current_admin)
):
    try:
        result = platform_config.update_referral_settings(
            body.bonus_percent, body.min_payout, body.enabled
        )
    except PlatformConfigError as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, **result})


# ── 系统设置 ────────────────────────────────────────────────


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str


class PricingRequest(BaseModel):
    exchange_rate: float | None = None
    markup_percent: float | None = None


class FeatureFlagsRequest(BaseModel):
    flags: dict[str, bool]


class PaymentCredentialsRequest(BaseModel):
    merchant_login: str
    password1: str
    password2: str


@router.get("/settings")
async def settings_overview(admin: dict = Depends(get_current_admin)):
    """系统设置总览：全部配置项、定价、功能开关、支付密钥状态。"""
    return JSONResponse(content={
        "code": 1,
        "config": platform_config.get_all_config(),
        "pricing": PricingPolicy().get(),
        "flags": platform_config.get_feature_flags(),
        "referral": platform_config.get_referral_settings(),
        "payment": platform_config.get_payment_credential_status(),
    })


@router.get("/settings/pricing")
async def get_pricing(admin: dict = Depends(get_current_admin)):
    return JSONResponse(content={"code": 1, **PricingPolicy().get()})


@router.put("/settings/pricing")
async def update_pricing(body: PricingRequest, admin: dict = Depends(get_current_admin)):
    try:
        result = PricingPolicy().set(body.exchange_rate, body.markup_percent)
    except PlatformConfigError as e:
        return _error(str(e))
    logger.info("管理员 %s 更新定价: %s", admin.get("sub"), result)
    return JSONResponse(content={"code": 1, **result})


@router.post("/settings/pricing/refresh-rate")
def refresh_rate(admin: dict = Depends(get_current_admin)):
    result = PricingPolicy().refresh_exchange_rate()
    return JSONResponse(content={"code": 1 if result["success"] else -1, **result})


@router.put("/settings/flags")
async def update_flags(body: FeatureFlagsRequest, admin: dict = Depends(get_current_admin)):
    try:
        for key, enabled in body.flags.items():
            platform_config.set_flag(key, enabled)
    except PlatformConfigError as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, "flags": platform_config.get_feature_flags()})


@router.post("/settings/payment-credentials")
async def save_payment_credentials(
    body: PaymentCredentialsRequest, admin: dict = Depends(require_super_admin)
):
    """保存 Robokassa 商户密钥（加密存储），仅超级管理员可操作。"""
    try:
        result = platform_config.save_payment_credentials(
            body.merchant_login, body.password1, body.password2
        )
    except PlatformConfigError as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, **result})


@router.post("/settings/change-password")
async def change_password_route(
    body: ChangePasswordRequest, admin: dict = Depends(get_current_admin)
):
    try:
        change_password(admin.get("sub", ""), body.old_password, body.new_password)
    except ValueError as e:
        return _error(str(e))
    return JSONResponse(content={"code": 1, "msg": "密码修改成功"})


# ── 厂商管理 ────────────────────────────────────────────────


@router.get("/provider/health")
def provider_health(admin: dict = Depends(get_current_admin)):
    return JSONResponse(content={"code": 1, "providers": build_gateway_from_env().health_check()})


@router.get("/provider/balance")
def provider_balance(admin: dict = Depends(get_current_admin)):
    try:
        balance = build_gateway_from_env().balance()
    except AllProvidersFailedError as e:
        logger.error("查询厂商余额失败: %s", e)
        return _error("查询厂商余额失败")
    return JSONResponse(content={
        "code": 1,
        "amount": str(balance.amount),
        "currency": balance.currency,
        "provider": balance.provider,
    })


@router.get("/provider/packages")
def provider_packages(
    admin: dict = Depends(get_current_admin),
    country: str | None = Query(None),
    type: str | None = Query(None),
):
    try:
        packages = build_gateway_from_env().list_packages(country, type)
    except AllProvidersFailedError as e:
        logger.error("查询厂商套餐失败: %s", e)
        return _error("查询厂商套餐失败")
    return JSONResponse(content={
        "code": 1,
        "packages": [
            {
                "package_code": p.package_code,
                "name": p.name,
                "country": p.country,
                "region": p.region,
                "volume_kb": p.volume_kb,
                "validity_days": p.validity_days,
                "price_minor": p.price_minor,
                "currency": p.currency,
                "is_unlimited": p.is_unlimited,
                "provider": p.provider,
            }
            for p in packages
        ],
    })


@router.get("/provider/orders/{order_ref}")
def provider_order_status(order_ref: str, admin: dict = Depends(get_current_admin)):
    try:
        status = build_gateway_from_env().order_status(order_ref)
    except AllProvidersFailedError as e:
        logger.error("查询厂商订单失败: %s", e)
        return _error("查询厂商订单失败")
    return JSONResponse(content={
        "code": 1,
        "order_ref": status.order_ref,
        "status": status.status,
        "iccid": status.iccid,
        "provider": status.provider,
    })


@router.post("/provider/sync")
def provider_sync(admin: dict = Depends(get_current_admin)):
    """手动触发商品目录同步。"""
    result = CatalogSynchronizer(build_gateway_from_env(), PricingPolicy()).sync()
    logger.info("管理员 %s 触发同步: %s", admin.get("sub"), result["message"])
    return JSONResponse(content={"code": 1 if result["success"] else -1, **result})
