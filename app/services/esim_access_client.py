"""
eSIM Access API 客户端：每个请求以 HMAC-SHA256 签名头认证。

请求头：
- RT-AccessCode: 访问码
- RT-RequestID: 本次请求的唯一 ID
- RT-Timestamp: 毫秒时间戳
- RT-Signature: HMAC-SHA256(timestamp + request_id + access_code + body, secret_key)

厂商响应在本模块内解析为带标签的 EsimAccess* 类型，再归一化为内部统一结构。
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
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
from app.services.sign import generate_vendor_sign

logger = logging.getLogger(__name__)

# 厂商 dataType 取值：1 = 固定流量，2 = 每日不限量
_DATA_TYPE_CODES = {TariffType.STANDARD: 1, TariffType.UNLIMITED: 2}


@dataclass
class EsimAccessPackage:
    """厂商套餐：volume 单位为 KB，price 单位为美分。"""

    packageCode: str
    name: str
    location: str
    volume: int
    duration: int
    price: int
    currencyCode: str = "USD"
    dataType: int = 1
    locationName: str | None = None

    @classmethod
    def from_api(cls, item: dict) -> "EsimAccessPackage":
        try:
            return cls(
                packageCode=str(item["packageCode"]),
                name=str(item.get("name") or item["packageCode"]),
                location=str(item.get("location") or ""),
                volume=int(item["volume"]),
                duration=int(item["duration"]),
                price=int(item["price"]),
                currencyCode=str(item.get("currencyCode") or "USD"),
                dataType=int(item.get("dataType") or 1),
                locationName=item.get("locationName"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(EsimAccessClient.name, f"套餐数据格式异常: {e}") from e

    def to_package(self) -> ProviderPackage:
        return ProviderPackage(
            package_code=self.packageCode,
            name=self.name,
            country=self.location,
            region=self.locationName,
            volume_kb=self.volume,
            validity_days=self.duration,
            price_minor=self.price,
            currency=self.currencyCode,
            is_unlimited=self.dataType == 2,
            provider=EsimAccessClient.name,
        )


@dataclass
class EsimAccessPurchase:
    orderNo: str
    iccid: str
    qrCodeUrl: str
    ac: str
    smdpAddress: str | None = None

    @classmethod
    def from_api(cls, obj: dict) -> "EsimAccessPurchase":
        try:
            return cls(
                orderNo=str(obj["orderNo"]),
                iccid=str(obj["iccid"]),
                qrCodeUrl=str(obj["qrCodeUrl"]),
                ac=str(obj["ac"]),
                smdpAddress=obj.get("smdpAddress"),
            )
        except (KeyError, TypeError) as e:
            raise ProviderError(EsimAccessClient.name, f"购买响应缺少字段: {e}") from e


class EsimAccessClient(ProviderClient):
    """eSIM Access 开放平台客户端。"""

    name = "esimaccess"
    DEFAULT_BASE_URL = "https://api.esimaccess.com/api/v1/open"

    def __init__(
        self,
        access_code: str,
        secret_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
    ):
        self.access_code = access_code
        self._secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _build_headers(self, body: str) -> dict:
        """构建带签名的请求头。"""
        timestamp = str(int(time.time() * 1000))
        request_id = uuid.uuid4().hex
        return {
            "Content-Type": "application/json",
            "RT-AccessCode": self.access_code,
            "RT-RequestID": request_id,
            "RT-Timestamp": timestamp,
            "RT-Signature": generate_vendor_sign(
                timestamp, request_id, self.access_code, body, self._secret_key
            ),
        }

    def _post(self, path: str, payload: dict) -> dict:
        """
        发送签名 POST 请求并返回 obj 字段。

        Raises:
            ProviderError: 网络异常、超时、非 JSON 响应或 success=false。
        """
        body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(
                    f"{self.base_url}{path}",
                    content=body.encode("utf-8"),
                    headers=self._build_headers(body),
                )
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProviderError(self.name, f"请求超时: {path}") from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ProviderError(self.name, f"请求失败: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(self.name, f"解析响应失败: {e}") from e

        if not isinstance(data, dict) or not data.get("success"):
            code = data.get("errorCode") if isinstance(data, dict) else None
            msg = data.get("errorMsg") if isinstance(data, dict) else None
            raise ProviderError(self.name, f"厂商返回错误: [{code}] {msg or '未知错误'}")

        obj = data.get("obj") or {}
        if not isinstance(obj, dict):
            raise ProviderError(self.name, "响应格式异常")
        return obj

    def list_packages(
        self, country: str | None = None, data_type: str | None = None
    ) -> list[ProviderPackage]:
        payload = {"locationCode": country or "", "type": "BASE"}
        if data_type:
            if data_type not in _DATA_TYPE_CODES:
                raise ProviderError(self.name, f"不支持的套餐类型: {data_type}")
            payload["dataType"] = _DATA_TYPE_CODES[data_type]

        obj = self._post("/package/list", payload)
        items = obj.get("packageList") or []
        packages = [EsimAccessPackage.from_api(item).to_package() for item in items]
        logger.info(
            "eSIM Access 套餐查询完成: country=%s, type=%s, count=%d",
            country or "*", data_type or "*", len(packages),
        )
        return packages

    def purchase(self, package_code: str, quantity: int = 1) -> PurchaseResult:
        payload = {
            "transactionId": uuid.uuid4().hex,
            "packageInfoList": [{"packageCode": package_code, "count": quantity}],
        }
        obj = self._post("/esim/order", payload)
        result = EsimAccessPurchase.from_api(obj)
        logger.info(
            "eSIM Access 购买成功: package=%s, orderNo=%s", package_code, result.orderNo
        )
        return PurchaseResult(
            order_ref=result.orderNo,
            iccid=result.iccid,
            qr_payload=result.qrCodeUrl,
            activation_code=result.ac,
            smdp_address=result.smdpAddress,
            provider=self.name,
            raw=obj,
        )

    def order_status(self, order_ref: str) -> ProviderOrderStatus:
        obj = self._post("/esim/query", {"orderNo": order_ref})
        esim_list = obj.get("esimList") or []
        if not esim_list:
            raise ProviderError(self.name, f"订单不存在: {order_ref}")
        first = esim_list[0]
        return ProviderOrderStatus(
            order_ref=order_ref,
            status=str(first.get("esimStatus") or "unknown"),
            iccid=first.get("iccid"),
            provider=self.name,
        )

    def balance(self) -> ProviderBalance:
        obj = self._post("/balance/query", {})
        try:
            # 厂商余额以美分返回
            amount = (Decimal(str(obj["balance"])) / 100).quantize(Decimal("0.01"))
        except (KeyError, InvalidOperation) as e:
            raise ProviderError(self.name, f"解析余额失败: {e}") from e
        return ProviderBalance(
            amount=amount, currency=str(obj.get("currencyCode") or "USD"), provider=self.name
        )
