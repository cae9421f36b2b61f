"""
商品目录同步：从厂商拉取套餐，换算流量单位和本地售价，按厂商套餐编码写入 products 表。

- 标准档与无限档分别查询，某一档失败只记录日志，继续处理另一档
- 已有商品原地更新价格/流量/名称，新套餐默认上架
- 不会因为本次批次中缺失而下架任何商品
"""

import logging
from datetime import datetime

from app.database import get_db
from app.models.schemas import ProviderPackage, TariffType
from app.services.esim_provider import AllProvidersFailedError, ProviderGateway
from app.services.pricing import PricingPolicy, convert_price

logger = logging.getLogger(__name__)


def format_volume(volume_kb: int) -> str:
    """
    KB → 可读流量字符串：不少于 1024 MB 时以 GB 表示，否则以 MB 表示，均取整。

    1048576 → "1 GB"，512000 → "500 MB"
    """
    mb = volume_kb / 1024
    if mb >= 1024:
        return f"{round(mb / 1024)} GB"
    return f"{round(mb)} MB"


class CatalogSynchronizer:
    """商品目录同步器，依赖注入厂商网关与定价策略。"""

    def __init__(self, gateway: ProviderGateway, pricing: PricingPolicy):
        self.gateway = gateway
        self.pricing = pricing

    def _fetch_tier(self, data_type: str) -> list[ProviderPackage] | None:
        """拉取一档套餐；失败返回 None。"""
        try:
            return self.gateway.list_packages(data_type=data_type)
        except AllProvidersFailedError as e:
            logger.warning("拉取 %s 套餐失败，跳过该档: %s", data_type, e)
            return None

    def sync(self) -> dict:
        """
        执行一次同步。

        Returns:
            dict: {"success": bool, "synced": int, "errors": int, "message": str}
        """
        packages: list[ProviderPackage] = []
        failed_tiers = 0
        for data_type in (TariffType.STANDARD, TariffType.UNLIMITED):
            batch = self._fetch_tier(data_type)
            if batch is None:
                failed_tiers += 1
                continue
            if data_type == TariffType.UNLIMITED:
                for pkg in batch:
                    pkg.is_unlimited = True
            packages.extend(batch)

        if not packages:
            logger.warning("同步未获取到任何套餐，已有商品保持不变")
            return {
                "success": False,
                "synced": 0,
                "errors": 1,
                "message": "厂商未返回任何套餐",
            }

        settings = self.pricing.get()
        synced = 0
        errors = 0
        db = get_db()
        try:
            for pkg in packages:
                try:
                    self._upsert(db, pkg, settings)
                    synced += 1
                except Exception as e:
                    errors += 1
                    logger.error("写入套餐失败: %s, %s", pkg.package_code, e)
            db.commit()
        finally:
            db.close()

        if failed_tiers:
            errors += failed_tiers
        message = f"同步完成: 成功 {synced} 个，失败 {errors} 个"
        logger.info(message)
        return {"success": True, "synced": synced, "errors": errors, "message": message}

    def _upsert(self, db, pkg: ProviderPackage, settings: dict) -> None:
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        data_amount = format_volume(pkg.volume_kb)
        existing = db.execute(
            "SELECT id, markup_percent FROM products WHERE provider_id = ?",
            (pkg.package_code,),
        ).fetchone()

        if existing:
            markup = existing["markup_percent"]
            if markup is None:
                markup = settings["markupPercent"]
            price = self._price(pkg.price_minor, markup, settings)
            db.execute(
                """UPDATE products
                   SET name = ?, data_amount = ?, validity_days = ?, provider_price = ?,
                       price = ?, is_unlimited = ?, updated_at = ?
                   WHERE id = ?""",
                (
                    pkg.name, data_amount, pkg.validity_days, pkg.price_minor,
                    price, 1 if pkg.is_unlimited else 0, now, existing["id"],
                ),
            )
        else:
            price = self._price(pkg.price_minor, settings["markupPercent"], settings)
            db.execute(
                """INSERT INTO products
                   (provider_id, country, region, name, data_amount, validity_days,
                    provider_price, price, is_active, is_unlimited, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?)""",
                (
                    pkg.package_code, pkg.country, pkg.region, pkg.name, data_amount,
                    pkg.validity_days, pkg.price_minor, price,
                    1 if pkg.is_unlimited else 0, now, now,
                ),
            )

    @staticmethod
    def _price(price_minor: int, markup: float, settings: dict) -> int:
        return convert_price(price_minor, float(markup), settings["exchangeRate"])
