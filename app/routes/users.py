"""用户接口：Telegram Mini App 登录、用户信息与统计。"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.services.auth import verify_telegram_init_data
from app.services.payment_service import PaymentService
from app.services.user_service import UserError, UserNotFoundError, UserService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/users")


class TelegramAuthRequest(BaseModel):
    init_data: str
    referral_code: str | None = None


@router.post("/auth/telegram")
async def telegram_auth(body: TelegramAuthRequest):
    """
    校验 initData 后按 Telegram ID 查找或创建用户。

    推荐码优先取请求体中的 referral_code，其次取 initData 的 start_param。
    """
    try:
        data = verify_telegram_init_data(body.init_data)
    except ValueError as e:
        logger.warning("Telegram 登录校验失败: %s", e)
        return JSONResponse(status_code=401, content={"code": -1, "msg": str(e)})

    tg_user = data["user"]
    try:
        user = UserService().find_or_create(
            int(tg_user["id"]),
            username=tg_user.get("username"),
            first_name=tg_user.get("first_name"),
            last_name=tg_user.get("last_name"),
            referral_code=body.referral_code or data.get("start_param"),
        )
    except UserError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "user": user})


@router.get("/{user_id}")
async def get_user(user_id: int):
    try:
        user = UserService().get_user(user_id)
    except UserNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "user": user})


@router.get("/{user_id}/stats")
async def get_user_stats(user_id: int):
    try:
        stats = UserService().get_user_stats(user_id)
    except UserNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, **stats})


@router.get("/{user_id}/transactions")
async def get_user_transactions(user_id: int):
    transactions = PaymentService().list_user_transactions(user_id)
    return JSONResponse(content={"code": 1, "transactions": transactions})
