"""
健康检查：数据库、Redis 连通性，PayPal 配置完整性
"""
import logging
from typing import Dict, Tuple

from sqlalchemy import text

from app.core.config import settings

logger = logging.getLogger(__name__)


async def check_db() -> Tuple[bool, str]:
    if not settings.DATABASE_URL.strip():
        return False, "DATABASE_URL 未配置"
    from app.core.database import engine
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("健康检查 DB 失败: %s", e)
        return False, str(e)
    return True, "ok"


def check_redis() -> Tuple[bool, str]:
    """缓存与 Celery broker 共用同一个 Redis"""
    if not settings.REDIS_URL.strip():
        return False, "REDIS_URL 未配置"
    from app.services.cache_service import _get_redis
    r = _get_redis()
    if not r:
        return False, "Redis 客户端未初始化"
    try:
        r.ping()
    except Exception as e:
        logger.warning("健康检查 Redis 失败: %s", e)
        return False, str(e)
    return True, "ok"


def check_payment_processor() -> Tuple[bool, str]:
    """只检查配置是否齐全，不请求 PayPal"""
    required: Dict[str, str] = {
        "PAYPAL_CLIENT_ID": settings.PAYPAL_CLIENT_ID,
        "PAYPAL_CLIENT_SECRET": settings.PAYPAL_CLIENT_SECRET,
    }
    if settings.WEBHOOK_VERIFY_ENABLED:
        required["PAYPAL_WEBHOOK_ID"] = settings.PAYPAL_WEBHOOK_ID
    missing = [name for name, value in required.items() if not value]
    if missing:
        return False, f"未配置: {', '.join(missing)}"
    return True, "sandbox" if "sandbox" in settings.PAYPAL_API_URL else "live"
