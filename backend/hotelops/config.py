"""
应用配置
从环境变量 / .env 读取配置
"""
from typing import List
from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用设置"""

    # 应用基础配置
    APP_NAME: str = "Hotel Operations Hub"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # 数据库配置
    DATABASE_URL: str = "sqlite:///./hotelops.db"
    SEED_RBAC_DATA: bool = True

    # JWT 配置
    SECRET_KEY: str = "hotelops-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 480

    # 权限缓存配置
    PERMISSION_CACHE_FRESH_SECONDS: int = 15 * 60
    PERMISSION_CACHE_GC_SECONDS: int = 30 * 60
    PERMISSION_CACHE_MAX_ENTRIES: int = 10000

    # 批量评估去重窗口（毫秒）
    PERMISSION_DEDUP_WINDOW_MS: int = 50

    # 无条件放行的系统角色
    PLATFORM_ADMIN_ROLES: List[str] = ["PLATFORM_ADMIN"]

    # 历史导出上限
    HISTORY_EXPORT_LIMIT: int = 10000

    model_config = ConfigDict(env_file=".env", case_sensitive=True)


# 全局设置实例
settings = Settings()
