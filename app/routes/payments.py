"""
支付接口路由：

- POST /v1/payments/create             生成 Robokassa 支付跳转链接
- GET/POST /v1/payments/robokassa/result   支付结果通知，成功应答 OK<InvId>
- GET/POST /v1/payments/robokassa/success | fail   浏览器回跳页面
"""

import asyncio
import logging
import os
from html import escape

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from pydantic import BaseModel

from app.services.payment_service import PaymentError, PaymentIntegrityError, PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payments")


class CreatePaymentRequest(BaseModel):
    order_id: int


@router.post("/create")
async def create_payment(body: CreatePaymentRequest):
    try:
        result = PaymentService().create_payment(body.order_id)
    except PaymentError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, **result})


async def _collect_params(request: Request) -> dict:
    """合并 query string 与表单参数（表单优先）。"""
    params = dict(request.query_params)
    if request.method == "POST":
        form_data = await request.form()
        params.update({k: v for k, v in form_data.items() if isinstance(v, str)})
    return params


@router.api_route("/robokassa/result", methods=["GET", "POST"])
async def robokassa_result(request: Request):
    """支付结果通知：校验通过返回纯文本 OK<InvId>，否则返回 ERROR 前缀的错误信息。"""
    params = await _collect_params(request)
    try:
        body = await asyncio.to_thread(PaymentService().handle_webhook, params)
    except PaymentIntegrityError as e:
        logger.warning("支付通知被拒绝: InvId=%s, %s", params.get("InvId"), e)
        return PlainTextResponse(f"ERROR: {e}", status_code=400)
    except PaymentError as e:
        logger.error("支付通知处理失败: %s", e)
        return PlainTextResponse(f"ERROR: {e}", status_code=500)
    return PlainTextResponse(body)


def _deep_link() -> str:
    bot = os.getenv("TELEGRAM_BOT_USERNAME", "esim_bot")
    return f"https://t.me/{bot}/app"


_PAGE = """<!DOCTYPE html>
<html lang="ru">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{title}</title>
<style>
body {{ font-family: -apple-system, sans-serif; text-align: center; padding: 48px 16px; }}
a.button {{ display: inline-block; margin-top: 24px; padding: 12px 24px; border-radius: 8px;
           background: #2481cc; color: #fff; text-decoration: none; }}
</style>
</head>
<body>
<h1>{icon} {title}</h1>
<p>{text}</p>
<a class="button" href="{link}">Вернуться в Telegram</a>
</body>
</html>"""


@router.api_route("/robokassa/success", methods=["GET", "POST"], response_class=HTMLResponse)
async def robokassa_success(request: Request):
    params = await _collect_params(request)
    inv_id = escape(str(params.get("InvId", "")))
    html = _PAGE.format(
        title="Оплата прошла успешно",
        icon="✅",
        text=f"Счёт #{inv_id} оплачен. Ваш eSIM появится в разделе «Мои eSIM».",
        link=escape(_deep_link()),
    )
    return HTMLResponse(content=html)


@router.api_route("/robokassa/fail", methods=["GET", "POST"], response_class=HTMLResponse)
async def robokassa_fail(request: Request):
    params = await _collect_params(request)
    inv_id = escape(str(params.get("InvId", "")))
    html = _PAGE.format(
        title="Оплата не прошла",
        icon="❌",
        text=f"Счёт #{inv_id} не оплачен. Попробуйте ещё раз.",
        link=escape(_deep_link()),
    )
    return HTMLResponse(content=html)
