"""商品浏览接口。"""

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from app.services.product_service import ProductError, ProductNotFoundError, ProductService

router = APIRouter(prefix="/v1/products")


@router.get("")
async def list_products(
    country: str | None = Query(None),
    type: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """上架商品列表，可按国家、套餐类型（standard/unlimited）筛选。"""
    try:
        result = ProductService().list_products(
            country=country, is_active=True, tariff_type=type, page=page, limit=limit
        )
    except ProductError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, **result})


@router.get("/countries")
async def list_countries():
    return JSONResponse(content={"code": 1, "countries": ProductService().get_countries()})


@router.get("/{product_id}")
async def get_product(product_id: int):
    try:
        product = ProductService().get_product(product_id)
    except ProductNotFoundError as e:
        return JSONResponse(status_code=404, content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "product": product})
