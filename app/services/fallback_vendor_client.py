"""
备用 eSIM 厂商客户端：通用 REST 接口，Bearer 令牌认证。

接口：
- GET  /packages?country=&type=   → {"packages": [...]}
- POST /orders                    → {"success": true, "order_id", "iccid", "qr_code", "activation_code"}
- GET  /orders/{order_id}         → {"order_id", "status", "iccid"}
- GET  /balance                   → {"balance", "currency"}
- GET  /health
"""

import logging
from decimal import Decimal, InvalidOperation

import httpx

from app.models.schemas import (
    ProviderBalance,
    ProviderOrderStatus,
    ProviderPackage,
    PurchaseResult,
    TariffType,
)
from app.services.esim_provider import ProviderClient, ProviderError

logger = logging.getLogger(__name__)


def _parse_package(item: dict) -> ProviderPackage:
    """备用厂商套餐：data_kb 为 KB，price 为美分。"""
    try:
        return ProviderPackage(
            package_code=str(item["id"]),
            name=str(item.get("title") or item["id"]),
            country=str(item["country"]),
            region=item.get("region"),
            volume_kb=int(item["data_kb"]),
            validity_days=int(item["validity_days"]),
            price_minor=int(item["price"]),
            currency=str(item.get("currency") or "USD"),
            is_unlimited=item.get("type") == TariffType.UNLIMITED,
            provider=FallbackVendorClient.name,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ProviderError(FallbackVendorClient.name, f"套餐数据格式异常: {e}") from e


class FallbackVendorClient(ProviderClient):
    """备用厂商 REST 客户端。"""

    name = "fallback"

    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            with httpx.Client(timeout=self.timeout, headers=self._headers) as client:
                response = client.request(method, f"{self.base_url}{path}", **kwargs)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, f"请求超时: {path}") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ProviderError(self.name, f"请求失败: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(self.name, f"解析响应失败: {e}") from e
        if not isinstance(data, dict):
            raise ProviderError(self.name, "响应格式异常")
        return data

    def list_packages(
        self, country: str | None = None, data_type: str | None = None
    ) -> list[ProviderPackage]:
        params = {}
        if country:
            params["country"] = country
        if data_type:
            params["type"] = data_type
        data = self._request("GET", "/packages", params=params)
        return [_parse_package(item) for item in data.get("packages") or []]

    def purchase(self, package_code: str, quantity: int = 1) -> PurchaseResult:
        data = self._request(
            "POST", "/orders", json={"package_id": package_code, "quantity": quantity}
        )
        if not data.get("success"):
            raise ProviderError(self.name, f"购买失败: {data.get('message') or '未知错误'}")
        try:
            result = PurchaseResult(
                order_ref=str(data["order_id"]),
                iccid=str(data["iccid"]),
                qr_payload=str(data["qr_code"]),
                activation_code=str(data.get("activation_code") or data.get("smdp_address") or ""),
                smdp_address=data.get("smdp_address"),
                provider=self.name,
                raw=data,
            )
        except KeyError as e:
            raise ProviderError(self.name, f"购买响应缺少字段: {e}") from e
        logger.info("备用厂商购买成功: package=%s, order=%s", package_code, result.order_ref)
        return result

    def order_status(self, order_ref: str) -> ProviderOrderStatus:
        data = self._request("GET", f"/orders/{order_ref}")
        return ProviderOrderStatus(
            order_ref=str(data.get("order_id") or order_ref),
            status=str(data.get("status") or "unknown"),
            iccid=data.get("iccid"),
            provider=self.name,
        )

    def balance(self) -> ProviderBalance:
        data = self._request("GET", "/balance")
        try:
            amount = Decimal(str(data["balance"])).quantize(Decimal("0.01"))
        except (KeyError, InvalidOperation) as e:
            raise ProviderError(self.name, f"解析余额失败: {e}") from e
        return ProviderBalance(
            amount=amount, currency=str(data.get("currency") or "USD"), provider=self.name
        )

    def health_check(self) -> bool:
        try:
            self._request("GET", "/health")
            return True
        except ProviderError as e:
            logger.warning("备用厂商不可用: %s", e.message)
            return False
