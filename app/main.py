"""
eSIM 商店后端入口：FastAPI 应用实例、路由注册、生命周期和后台任务。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)

EXCHANGE_RATE_INTERVAL = 24 * 60 * 60
STARTUP_SYNC_DELAY = int(os.getenv("STARTUP_SYNC_DELAY", "10"))


# ── 后台任务 ──────────────────────────────────────────────

async def _order_expiry_task() -> None:
    """定期释放超时未支付的订单（每 60 秒）。"""
    from app.services.order_service import OrderService

    svc = OrderService()
    while True:
        try:
            count = await asyncio.to_thread(svc.expire_pending_orders)
            if count:
                logger.info("已释放超时订单 %d 个", count)
        except Exception as e:
            logger.error("订单过期检查异常: %s", e)
        await asyncio.sleep(60)


async def _exchange_rate_task() -> None:
    """每日刷新汇率（AUTO_UPDATE_RATE 开启时）。"""
    from app.services import platform_config
    from app.services.platform_config import AUTO_UPDATE_RATE_KEY
    from app.services.pricing import PricingPolicy

    policy = PricingPolicy()
    while True:
        try:
            if platform_config.get_flag(AUTO_UPDATE_RATE_KEY):
                result = await asyncio.to_thread(policy.refresh_exchange_rate)
                logger.info("定时汇率刷新: %s", result["message"])
            else:
                logger.debug("自动汇率刷新已关闭")
        except Exception as e:
            logger.error("定时汇率刷新异常: %s", e)
        await asyncio.sleep(EXCHANGE_RATE_INTERVAL)


async def _startup_sync_task() -> None:
    """启动后延迟执行一次商品目录同步。"""
    from app.services.catalog_sync import CatalogSynchronizer
    from app.services.esim_provider import build_gateway_from_env
    from app.services.pricing import PricingPolicy

    await asyncio.sleep(STARTUP_SYNC_DELAY)
    try:
        gateway = build_gateway_from_env()
        if not gateway.configured:
            logger.info("未配置 eSIM 厂商，跳过启动同步")
            return
        result = await asyncio.to_thread(CatalogSynchronizer(gateway, PricingPolicy()).sync)
        logger.info("启动同步完成: %s", result["message"])
    except Exception as e:
        logger.error("启动同步异常: %s", e)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库并启动后台任务。"""
    from app.database import init_db

    init_db()
    logger.info("数据库初始化完成")

    tasks = []
    if os.environ.get("TESTING") != "1":
        tasks.append(asyncio.create_task(_order_expiry_task()))
        tasks.append(asyncio.create_task(_exchange_rate_task()))
        tasks.append(asyncio.create_task(_startup_sync_task()))
        logger.info("后台任务已启动：订单过期释放、汇率刷新、启动同步")

    yield

    for t in tasks:
        t.cancel()
        try:
            await t
        except asyncio.CancelledError:
            pass


app = FastAPI(title="eSIM Shop", description="eSIM 转售后端", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 路由注册 ──────────────────────────────────────────────

from app.routes.admin import router as admin_router
from app.routes.loyalty import router as loyalty_router
from app.routes.orders import router as orders_router
from app.routes.payments import router as payments_router
from app.routes.products import router as products_router
from app.routes.users import router as users_router

app.include_router(users_router)
app.include_router(products_router)
app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(loyalty_router)
app.include_router(admin_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
