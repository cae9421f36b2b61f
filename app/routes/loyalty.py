"""忠诚度等级与推荐计划的公开接口。"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.services.loyalty_service import LoyaltyService
from app.services.referral_service import ReferralService

router = APIRouter(prefix="/v1")


@router.get("/loyalty/levels")
async def list_levels():
    return JSONResponse(content={"code": 1, "levels": LoyaltyService().list_levels()})


@router.get("/referrals/{user_id}")
async def referral_stats(user_id: int):
    stats = ReferralService().get_referral_stats(user_id)
    if stats is None:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "用户不存在"})
    return JSONResponse(content={"code": 1, **stats})
