"""
eSIM 厂商网关：按顺序尝试已配置的厂商客户端，对外提供统一的套餐、购买、
订单状态、余额和健康检查接口。

- 厂商列表为有序策略：主厂商 → 备用厂商（→ 开发桩），逐个尝试
- 单个厂商的失败记为 ProviderError，全部失败时抛出 AllProvidersFailedError
- 除按顺序切换到下一个厂商外，不做任何自动重试
- 健康检查对每个厂商独立进行，一个厂商异常不影响其他厂商的结果
"""

import logging
import os
import time
import uuid
from decimal import Decimal

from app.models.schemas import (
    ProviderBalance,
    ProviderOrderStatus,
    ProviderPackage,
    PurchaseResult,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = float(os.getenv("ESIM_PROVIDER_TIMEOUT", "30"))


class ProviderError(Exception):
    """单个厂商调用失败（网络异常、超时、响应格式异常或厂商返回业务错误）。"""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        self.message = message
        super().__init__(f"[{provider}] {message}")


class AllProvidersFailedError(Exception):
    """所有已配置厂商均调用失败。"""

    def __init__(self, operation: str, errors: list[ProviderError]):
        self.operation = operation
        self.errors = errors
        detail = "; ".join(str(e) for e in errors) or "未配置任何厂商"
        super().__init__(f"{operation} 失败: {detail}")


class ProviderClient:
    """厂商客户端基类，子类需实现全部业务方法。"""

    name = "base"

    def list_packages(
        self, country: str | None = None, data_type: str | None = None
    ) -> list[ProviderPackage]:
        raise NotImplementedError

    def purchase(self, package_code: str, quantity: int = 1) -> PurchaseResult:
        raise NotImplementedError

    def order_status(self, order_ref: str) -> ProviderOrderStatus:
        raise NotImplementedError

    def balance(self) -> ProviderBalance:
        raise NotImplementedError

    def health_check(self) -> bool:
        """默认以余额查询作为连通性检查。"""
        try:
            self.balance()
            return True
        except ProviderError as e:
            logger.warning("厂商健康检查失败 (%s): %s", self.name, e.message)
            return False


class StubProviderClient(ProviderClient):
    """开发用桩厂商：不发起网络请求，返回模拟的 eSIM 激活数据。"""

    name = "stub"

    def list_packages(self, country=None, data_type=None) -> list[ProviderPackage]:
        return []

    def purchase(self, package_code: str, quantity: int = 1) -> PurchaseResult:
        ref = f"STUB_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"
        iccid = "8999" + f"{uuid.uuid4().int % 10**15:015d}"
        logger.warning("使用开发桩履约: package=%s, ref=%s", package_code, ref)
        return PurchaseResult(
            order_ref=ref,
            iccid=iccid,
            qr_payload=f"LPA:1$stub.esim.local${ref}",
            activation_code=f"LPA:1$stub.esim.local${ref}",
            smdp_address="stub.esim.local",
            provider=self.name,
        )

    def order_status(self, order_ref: str) -> ProviderOrderStatus:
        return ProviderOrderStatus(order_ref=order_ref, status="active", provider=self.name)

    def balance(self) -> ProviderBalance:
        return ProviderBalance(amount=Decimal("0"), currency="USD", provider=self.name)

    def health_check(self) -> bool:
        return True


class ProviderGateway:
    """按顺序尝试厂商客户端的网关。"""

    def __init__(self, clients: list[ProviderClient]):
        self.clients = list(clients)

    @property
    def configured(self) -> bool:
        return bool(self.clients)

    def _first_success(self, operation: str, call):
        """依次调用每个厂商，返回第一个成功结果；全部失败时抛出聚合异常。"""
        errors: list[ProviderError] = []
        for client in self.clients:
            try:
                result = call(client)
            except ProviderError as e:
                logger.warning("%s 失败，尝试下一个厂商: %s", operation, e)
                errors.append(e)
                continue
            if errors:
                logger.info("%s 已由备用厂商 %s 完成", operation, client.name)
            return result
        raise AllProvidersFailedError(operation, errors)

    def list_packages(
        self, country: str | None = None, data_type: str | None = None
    ) -> list[ProviderPackage]:
        return self._first_success(
            "获取套餐列表", lambda c: c.list_packages(country, data_type)
        )

    def purchase(self, package_code: str, quantity: int = 1) -> PurchaseResult:
        """
        购买 eSIM。厂商侧不保证幂等，调用方必须保证每笔订单至多调用一次。
        """
        return self._first_success(
            "购买 eSIM", lambda c: c.purchase(package_code, quantity)
        )

    def order_status(self, order_ref: str) -> ProviderOrderStatus:
        return self._first_success("查询订单状态", lambda c: c.order_status(order_ref))

    def balance(self) -> ProviderBalance:
        return self._first_success("查询余额", lambda c: c.balance())

    def health_check(self) -> dict:
        """对每个厂商独立检查，返回 {厂商名: 是否可用}。"""
        result = {}
        for client in self.clients:
            try:
                result[client.name] = bool(client.health_check())
            except Exception as e:
                logger.warning("厂商健康检查异常 (%s): %s", client.name, e)
                result[client.name] = False
        return result


def build_gateway_from_env() -> ProviderGateway:
    """根据环境变量组装厂商顺序：eSIM Access → 备用 REST 厂商 → 开发桩。"""
    from app.services.esim_access_client import EsimAccessClient
    from app.services.fallback_vendor_client import FallbackVendorClient

    clients: list[ProviderClient] = []

    access_code = os.getenv("ESIM_ACCESS_CODE")
    secret_key = os.getenv("ESIM_SECRET_KEY")
    if access_code and secret_key:
        clients.append(EsimAccessClient(
            access_code,
            secret_key,
            base_url=os.getenv("ESIM_ACCESS_BASE_URL", EsimAccessClient.DEFAULT_BASE_URL),
            timeout=DEFAULT_TIMEOUT,
        ))

    fallback_url = os.getenv("ESIM_FALLBACK_API_URL")
    if fallback_url:
        clients.append(FallbackVendorClient(
            fallback_url,
            api_key=os.getenv("ESIM_FALLBACK_API_KEY"),
            timeout=DEFAULT_TIMEOUT,
        ))

    if os.getenv("ESIM_PROVIDER_STUB") == "1":
        clients.append(StubProviderClient())

    if not clients:
        logger.warning("未配置任何 eSIM 厂商，履约和同步将失败")

    return ProviderGateway(clients)
