"""签名生成与验证模块：Robokassa MD5 签名、eSIM 厂商请求签名。"""

import hashlib
import hmac


def generate_payment_sign(
    merchant_login: str, out_sum: str, inv_id: int | str, password1: str
) -> str:
    """
    生成支付跳转签名。

    拼接 MerchantLogin:OutSum:InvId:Password1 后 MD5，
    返回小写 32 位十六进制签名字符串。
    """
    sign_str = f"{merchant_login}:{out_sum}:{inv_id}:{password1}"
    return hashlib.md5(sign_str.encode("utf-8")).hexdigest()


def generate_result_sign(out_sum: str, inv_id: int | str, password2: str) -> str:
    """
    生成支付结果通知（ResultURL）的期望签名。

    拼接 OutSum:InvId:Password2 后 MD5。
    """
    sign_str = f"{out_sum}:{inv_id}:{password2}"
    return hashlib.md5(sign_str.encode("utf-8")).hexdigest()


def verify_result_sign(
    out_sum: str, inv_id: int | str, password2: str, sign: str
) -> bool:
    """验证支付结果通知签名（支付方发送大写十六进制，比较时忽略大小写）。"""
    if not sign:
        return False
    expected = generate_result_sign(out_sum, inv_id, password2)
    return hmac.compare_digest(expected, sign.strip().lower())


def generate_vendor_sign(
    timestamp: str, request_id: str, access_code: str, body: str, secret_key: str
) -> str:
    """
    生成 eSIM 厂商请求签名。

    1. 拼接 timestamp + request_id + access_code + 请求体
    2. 以 secret_key 为密钥做 HMAC-SHA256
    3. 返回小写十六进制字符串，放入 RT-Signature 请求头
    """
    sign_str = timestamp + request_id + access_code + body
    return hmac.new(
        secret_key.encode("utf-8"), sign_str.encode("utf-8"), hashlib.sha256
    ).hexdigest()
