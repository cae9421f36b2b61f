"""金额换算工具：Decimal（两位小数）与数据库整数分之间的转换。"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")


def quantize(amount) -> Decimal:
    """规范化为两位小数的 Decimal（四舍五入）。"""
    try:
        return Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"金额格式无效: {amount}") from e


def to_cents(amount) -> int:
    """Decimal/字符串/整数金额 → 整数分。"""
    return int(quantize(amount) * 100)


def from_cents(cents: int | None) -> Decimal:
    """整数分 → 两位小数的 Decimal。"""
    return (Decimal(cents or 0) / 100).quantize(CENT)


def percent_of(amount: Decimal, percent) -> Decimal:
    """计算 amount 的 percent%，结果保留两位小数。"""
    return quantize(Decimal(amount) * Decimal(str(percent)) / 100)


def format_amount(amount) -> str:
    """格式化为 "1340.00" 形式的字符串（支付网关要求的 OutSum 格式）。"""
    return f"{quantize(amount):.2f}"
