"""
定价策略：汇率与默认加价率的读写、厂商价格到本地售价的换算、汇率刷新。

汇率与加价率持久化在 system_config 表中，缺失时使用默认值（汇率 95，加价 30%）。
汇率来源为外部每日 JSON 快照；刷新失败时保留原值，只返回失败结果。
"""

import logging
import os
from datetime import datetime
from decimal import ROUND_CEILING, Decimal, InvalidOperation

import httpx

from app.services import platform_config
from app.services.platform_config import (
    DEFAULT_MARKUP_KEY,
    EXCHANGE_RATE_KEY,
    LAST_RATE_UPDATE_KEY,
    PlatformConfigError,
)

logger = logging.getLogger(__name__)

DEFAULT_EXCHANGE_RATE = 95.0
DEFAULT_MARKUP_PERCENT = 30.0

EXCHANGE_RATE_URL = os.getenv(
    "EXCHANGE_RATE_URL", "https://www.cbr-xml-daily.ru/daily_json.js"
)


class ExchangeRateError(Exception):
    """汇率获取失败。"""
    pass


def convert_price(price_minor: int, markup_percent: float, exchange_rate: float) -> int:
    """
    厂商价格（美分）→ 本地售价（整数卢布）。

    price = priceMinor / 100 * (1 + markup / 100) * exchangeRate，向上取整到整卢布。
    注意这里不是四舍五入：350 美分、加价 30%、汇率 95 得到 432.25，售价为 433 而不是 432。
    使用 Decimal 计算，避免浮点误差影响取整。
    """
    value = (
        Decimal(int(price_minor)) / 100
        * (1 + Decimal(str(markup_percent)) / 100)
        * Decimal(str(exchange_rate))
    )
    return int(value.to_integral_value(rounding=ROUND_CEILING))


class PricingPolicy:
    """定价策略：汇率和默认加价率的唯一读写入口。"""

    def get(self) -> dict:
        return {
            "exchangeRate": platform_config.get_float(EXCHANGE_RATE_KEY, DEFAULT_EXCHANGE_RATE),
            "markupPercent": platform_config.get_float(DEFAULT_MARKUP_KEY, DEFAULT_MARKUP_PERCENT),
            "lastRateUpdate": platform_config.get_config(LAST_RATE_UPDATE_KEY),
        }

    def set(self, exchange_rate: float | None = None, markup_percent: float | None = None) -> dict:
        """
        更新汇率和/或加价率，未传入的字段保持不变。

        Raises:
            PlatformConfigError: 汇率必须为正数，加价率不能为负数。
        """
        if exchange_rate is not None:
            if exchange_rate <= 0:
                raise PlatformConfigError("汇率必须大于 0")
            platform_config.set_config(
                EXCHANGE_RATE_KEY, str(exchange_rate), "USD/RUB 汇率"
            )
        if markup_percent is not None:
            if markup_percent < 0:
                raise PlatformConfigError("加价率不能为负数")
            platform_config.set_config(
                DEFAULT_MARKUP_KEY, str(markup_percent), "同步时的默认加价率（%）"
            )
        return self.get()

    def price_for(self, price_minor: int, markup_percent: float | None = None) -> int:
        """按当前汇率计算本地售价；markup_percent 为空时使用默认加价率。"""
        settings = self.get()
        markup = settings["markupPercent"] if markup_percent is None else markup_percent
        return convert_price(price_minor, markup, settings["exchangeRate"])

    # ── 汇率刷新 ──────────────────────────────────────────

    def fetch_exchange_rate(self) -> float:
        """
        从外部汇率源读取 USD 汇率。

        Raises:
            ExchangeRateError: 请求失败、超时或响应格式异常。
        """
        try:
            with httpx.Client(timeout=10.0) as client:
                resp = client.get(EXCHANGE_RATE_URL)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            raise ExchangeRateError(f"请求汇率接口失败: {e}") from e
        except ValueError as e:
            raise ExchangeRateError(f"解析汇率响应失败: {e}") from e

        try:
            rate = Decimal(str(data["Valute"]["USD"]["Value"]))
        except (KeyError, TypeError, InvalidOperation) as e:
            raise ExchangeRateError(f"汇率响应缺少 USD 数据: {e}") from e

        if rate <= 0:
            raise ExchangeRateError(f"汇率数值无效: {rate}")
        return float(rate.quantize(Decimal("0.0001")))

    def refresh_exchange_rate(self) -> dict:
        """
        刷新汇率：成功则覆盖存储的汇率并记录刷新时间；失败则保留原值。

        Returns:
            dict: {"success": bool, "exchangeRate": float, "message": str}
        """
        previous = self.get()["exchangeRate"]
        try:
            rate = self.fetch_exchange_rate()
        except ExchangeRateError as e:
            logger.warning("汇率刷新失败，保留原汇率 %s: %s", previous, e)
            return {"success": False, "exchangeRate": previous, "message": str(e)}

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        platform_config.set_config(EXCHANGE_RATE_KEY, str(rate), "USD/RUB 汇率")
        platform_config.set_config(LAST_RATE_UPDATE_KEY, now, "最近一次汇率刷新时间")
        logger.info("汇率已刷新: %s -> %s", previous, rate)
        return {"success": True, "exchangeRate": rate, "message": f"汇率已更新为 {rate}"}
