"""
Hotel Operations Hub 主应用入口
权限评估引擎的 HTTP 接口
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from authz.cache import init_cache, teardown_cache
from hotelops.config import settings
from hotelops.database import SessionLocal, init_db
from hotelops.routers import auth, permissions, role_history
from hotelops.services.permission_engine import build_batch_evaluator, cache_config_from_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：数据库、种子数据、权限缓存"""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    init_db()

    if settings.SEED_RBAC_DATA:
        from hotelops.services.rbac_seed import seed_rbac_data
        seed_db = SessionLocal()
        try:
            seed_stats = seed_rbac_data(seed_db)
            if any(seed_stats.values()):
                logger.info(f"RBAC seed data initialized: {seed_stats}")
        finally:
            seed_db.close()

    app.state.permission_cache = init_cache(cache_config_from_settings(settings))
    app.state.permission_batch = build_batch_evaluator(app.state.permission_cache)

    yield

    await app.state.permission_batch.flush()
    teardown_cache(app.state.permission_cache)


# 创建应用
app = FastAPI(
    title=settings.APP_NAME,
    description="多租户酒店运营后台 - 权限评估引擎",
    version="1.0.0",
    lifespan=lifespan
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # 生产环境应限制具体域名
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(auth.router)
app.include_router(permissions.router)
app.include_router(role_history.assignment_router)
app.include_router(role_history.history_router)


@app.get("/health")
def health_check():
    """健康检查"""
    return {"status": "healthy", "app": settings.APP_NAME}
