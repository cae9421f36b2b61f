"""订单接口：创建订单、查询订单。"""

import logging
from decimal import Decimal

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.services.order_service import OrderCreateError, OrderNotFoundError, OrderService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/orders")


class CreateOrderRequest(BaseModel):
    user_id: int
    product_id: int
    quantity: int = 1
    use_bonuses: Decimal = Decimal("0")


@router.post("")
async def create_order(body: CreateOrderRequest):
    try:
        order = OrderService().create_order(
            body.user_id, body.product_id, body.quantity, body.use_bonuses
        )
    except OrderCreateError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "order": order})


@router.get("/user/{user_id}")
async def list_user_orders(user_id: int, limit: int = Query(50, ge=1, le=200)):
    orders = OrderService().list_user_orders(user_id, limit)
    return JSONResponse(content={"code": 1, "orders": orders})


@router.get("/{order_id}")
async def get_order(order_id: int):
    try:
        order = OrderService().get_order(order_id)
    except OrderNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "order": order})
