"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。

金额字段在数据库中以整数分存储，对外序列化时转换为两位小数字符串。
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


class OrderStatus:
    PENDING = "PENDING"
    PAID = "PAID"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    ALL = (PENDING, PAID, COMPLETED, FAILED, CANCELLED, REFUNDED)


class TransactionStatus:
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    ALL = (PENDING, SUCCEEDED, FAILED, CANCELLED)


class TransactionType:
    PAYMENT = "PAYMENT"
    REFERRAL_BONUS = "REFERRAL_BONUS"
    CASHBACK = "CASHBACK"
    REFUND = "REFUND"

    ALL = (PAYMENT, REFERRAL_BONUS, CASHBACK, REFUND)


class TariffType:
    STANDARD = "standard"
    UNLIMITED = "unlimited"

    ALL = (STANDARD, UNLIMITED)


# ── 厂商边界类型 ──────────────────────────────────────────


@dataclass
class ProviderPackage:
    """厂商套餐的统一内部形态（各厂商响应在网关边界归一化为此结构）。"""

    package_code: str
    name: str
    country: str
    volume_kb: int
    validity_days: int
    price_minor: int  # 美分
    currency: str = "USD"
    region: Optional[str] = None
    is_unlimited: bool = False
    provider: str = ""


@dataclass
class PurchaseResult:
    order_ref: str
    iccid: str
    qr_payload: str
    activation_code: str
    smdp_address: Optional[str] = None
    provider: str = ""
    raw: dict = field(default_factory=dict)


@dataclass
class ProviderOrderStatus:
    order_ref: str
    status: str
    iccid: Optional[str] = None
    provider: str = ""


@dataclass
class ProviderBalance:
    amount: Decimal
    currency: str
    provider: str = ""
