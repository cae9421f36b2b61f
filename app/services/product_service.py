"""商品服务：商品浏览、后台增改、软删除与批量操作。"""

import logging
from datetime import datetime

from app.database import get_db
from app.models.schemas import TariffType
from app.services.pagination import paginate
from app.services.pricing import PricingPolicy, convert_price

logger = logging.getLogger(__name__)

_EDITABLE_FIELDS = (
    "country", "region", "name", "data_amount", "validity_days",
    "provider_price", "price", "markup_percent", "is_active",
    "is_unlimited", "badge", "badge_color",
)
_REQUIRED_FIELDS = ("provider_id", "country", "name", "data_amount", "validity_days", "provider_price")


class ProductError(Exception):
    """商品操作异常。"""
    pass


class ProductNotFoundError(ProductError):
    pass


def product_to_dict(row) -> dict:
    return {
        "id": row["id"],
        "provider_id": row["provider_id"],
        "country": row["country"],
        "region": row["region"],
        "name": row["name"],
        "data_amount": row["data_amount"],
        "validity_days": row["validity_days"],
        "provider_price": row["provider_price"],
        "price": row["price"],
        "markup_percent": row["markup_percent"],
        "is_active": bool(row["is_active"]),
        "is_unlimited": bool(row["is_unlimited"]),
        "badge": row["badge"],
        "badge_color": row["badge_color"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
    }


def _placeholders(ids: list[int]) -> str:
    return ",".join("?" for _ in ids)


class ProductService:
    """商品服务，定价依赖通过构造函数注入。"""

    def __init__(self, pricing: PricingPolicy | None = None):
        self.pricing = pricing or PricingPolicy()

    # ── 浏览 ──────────────────────────────────────────────

    def list_products(
        self,
        country: str | None = None,
        is_active: bool | None = True,
        tariff_type: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict:
        """分页列出商品。is_active 为 None 时不按上架状态过滤（后台使用）。"""
        where = []
        params: list = []
        if is_active is not None:
            where.append("is_active = ?")
            params.append(1 if is_active else 0)
        if country:
            where.append("country = ?")
            params.append(country)
        if tariff_type:
            if tariff_type not in TariffType.ALL:
                raise ProductError(f"未知的套餐类型: {tariff_type}")
            where.append("is_unlimited = ?")
            params.append(1 if tariff_type == TariffType.UNLIMITED else 0)

        where_sql = f" WHERE {' AND '.join(where)}" if where else ""
        db = get_db()
        try:
            return paginate(
                db,
                f"SELECT COUNT(*) FROM products{where_sql}",
                f"SELECT * FROM products{where_sql} ORDER BY country ASC, price ASC, id ASC",
                params, page, limit, product_to_dict,
            )
        finally:
            db.close()

    def get_countries(self) -> list[str]:
        db = get_db()
        try:
            rows = db.execute(
                "SELECT DISTINCT country FROM products WHERE is_active = 1 ORDER BY country ASC"
            ).fetchall()
            return [row["country"] for row in rows]
        finally:
            db.close()

    def get_product(self, product_id: int) -> dict:
        db = get_db()
        try:
            row = db.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
        finally:
            db.close()
        if not row:
            raise ProductNotFoundError("商品不存在")
        return product_to_dict(row)

    # ── 后台增改 ──────────────────────────────────────────

    def create_product(self, data: dict) -> dict:
        """
        创建商品。未给出 price 时按当前定价策略由 provider_price 计算。

        Raises:
            ProductError: 缺少必填字段或厂商套餐编码重复。
        """
        missing = [f for f in _REQUIRED_FIELDS if data.get(f) in (None, "")]
        if missing:
            raise ProductError(f"缺少必填字段: {', '.join(missing)}")

        price = data.get("price")
        if price is None:
            price = self.pricing.price_for(int(data["provider_price"]), data.get("markup_percent"))

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                """INSERT INTO products
                   (provider_id, country, region, name, data_amount, validity_days,
                    provider_price, price, markup_percent, is_active, is_unlimited,
                    badge, badge_color, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    data["provider_id"], data["country"], data.get("region"), data["name"],
                    data["data_amount"], int(data["validity_days"]), int(data["provider_price"]),
                    int(price), data.get("markup_percent"),
                    1 if data.get("is_active", True) else 0,
                    1 if data.get("is_unlimited") else 0,
                    data.get("badge"), data.get("badge_color"), now, now,
                ),
            )
            db.commit()
            product_id = cursor.lastrowid
        except Exception as e:
            db.rollback()
            if "UNIQUE constraint failed" in str(e):
                raise ProductError(f"厂商套餐编码 '{data['provider_id']}' 已存在") from e
            raise
        finally:
            db.close()

        logger.info("商品已创建: id=%s, provider_id=%s", product_id, data["provider_id"])
        return self.get_product(product_id)

    def update_product(self, product_id: int, data: dict) -> dict:
        fields = {k: v for k, v in data.items() if k in _EDITABLE_FIELDS and v is not None}
        if not fields:
            return self.get_product(product_id)
        for key in ("is_active", "is_unlimited"):
            if key in fields:
                fields[key] = 1 if fields[key] else 0

        fields["updated_at"] = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        set_sql = ", ".join(f"{k} = ?" for k in fields)
        db = get_db()
        try:
            cursor = db.execute(
                f"UPDATE products SET {set_sql} WHERE id = ?",
                list(fields.values()) + [product_id],
            )
            db.commit()
            if cursor.rowcount == 0:
                raise ProductNotFoundError("商品不存在")
        finally:
            db.close()
        return self.get_product(product_id)

    def delete_product(self, product_id: int) -> dict:
        """软删除：只置为下架。"""
        return self.update_product(product_id, {"is_active": False})

    # ── 批量操作 ──────────────────────────────────────────

    def bulk_toggle_active(self, ids: list[int], is_active: bool) -> int:
        if not ids:
            return 0
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                f"UPDATE products SET is_active = ?, updated_at = ? WHERE id IN ({_placeholders(ids)})",
                [1 if is_active else 0, now] + list(ids),
            )
            db.commit()
            count = cursor.rowcount
        finally:
            db.close()
        logger.info("批量%s商品: %d 个", "上架" if is_active else "下架", count)
        return count

    def bulk_toggle_by_type(self, tariff_type: str, is_active: bool) -> int:
        if tariff_type not in TariffType.ALL:
            raise ProductError(f"未知的套餐类型: {tariff_type}")
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                "UPDATE products SET is_active = ?, updated_at = ? WHERE is_unlimited = ?",
                (1 if is_active else 0, now, 1 if tariff_type == TariffType.UNLIMITED else 0),
            )
            db.commit()
            count = cursor.rowcount
        finally:
            db.close()
        logger.info("按类型批量切换: type=%s, active=%s, count=%d", tariff_type, is_active, count)
        return count

    def bulk_set_badge(self, ids: list[int], badge: str | None, badge_color: str | None) -> int:
        if not ids:
            return 0
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            cursor = db.execute(
                f"UPDATE products SET badge = ?, badge_color = ?, updated_at = ? WHERE id IN ({_placeholders(ids)})",
                [badge or None, badge_color or None, now] + list(ids),
            )
            db.commit()
            return cursor.rowcount
        finally:
            db.close()

    def bulk_set_markup(self, ids: list[int], markup_percent: float) -> int:
        """按新的加价率重算指定商品的售价，并记住该加价率供后续同步使用。"""
        if markup_percent < 0:
            raise ProductError("加价率不能为负数")
        if not ids:
            return 0

        rate = self.pricing.get()["exchangeRate"]
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        db = get_db()
        try:
            rows = db.execute(
                f"SELECT id, provider_price FROM products WHERE id IN ({_placeholders(ids)})",
                list(ids),
            ).fetchall()
            for row in rows:
                db.execute(
                    "UPDATE products SET price = ?, markup_percent = ?, updated_at = ? WHERE id = ?",
                    (convert_price(row["provider_price"], markup_percent, rate),
                     markup_percent, now, row["id"]),
                )
            db.commit()
        finally:
            db.close()
        logger.info("批量设置加价率: markup=%s, count=%d", markup_percent, len(rows))
        return len(rows)
