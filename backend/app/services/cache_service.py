"""
Redis 短期缓存：支付服务 access token、订单详情
key 统一加 CACHE_KEY_PREFIX 前缀；Redis 不可用时所有操作静默降级为未命中
"""
import json
import logging
from typing import Any, Callable, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)

_redis_client = None


def _get_redis():
    """懒加载 Redis 客户端；创建失败返回 None"""
    global _redis_client
    if _redis_client is None:
        try:
            import redis
            _redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        except Exception as e:
            logger.warning("缓存 Redis 连接失败，缓存将不生效: %s", e)
    return _redis_client


def _key(name: str) -> str:
    return f"{settings.CACHE_KEY_PREFIX}{name}"


def _run(op: str, key: str, fn: Callable[[Any], Any], fallback: Any = None) -> Any:
    """统一处理：缓存关闭、无客户端、Redis 异常时返回 fallback"""
    if not settings.CACHE_ENABLED:
        return fallback
    r = _get_redis()
    if not r:
        return fallback
    try:
        return fn(r)
    except Exception as e:
        logger.debug("缓存 %s 失败 %s: %s", op, key, e)
        return fallback


def get(key: str) -> Optional[Any]:
    raw = _run("get", key, lambda r: r.get(_key(key)))
    return json.loads(raw) if raw is not None else None


def set(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    """value 以 JSON 写入；ttl 默认 CACHE_TTL_DETAIL 秒"""
    payload = json.dumps(value, ensure_ascii=False, default=str)
    seconds = ttl if ttl is not None else settings.CACHE_TTL_DETAIL
    return bool(_run("set", key, lambda r: r.setex(_key(key), seconds, payload) or True, False))


def delete(key: str) -> bool:
    return bool(_run("delete", key, lambda r: r.delete(_key(key)) is not None, False))


# ---------- 支付服务 token ---------- #
def _token_key(client_id: str) -> str:
    return f"paypal:token:{client_id}"


def get_processor_token(client_id: str) -> Optional[str]:
    return get(_token_key(client_id))


def set_processor_token(client_id: str, token: str, ttl: int) -> bool:
    return set(_token_key(client_id), token, ttl)


# ---------- 订单详情 ---------- #
def _order_key(order_id: int) -> str:
    return f"order:detail:{order_id}"


def get_order_detail(order_id: int) -> Optional[dict]:
    return get(_order_key(order_id))


def set_order_detail(order_id: int, detail: dict) -> bool:
    return set(_order_key(order_id), detail)


def invalidate_order_cache(order_id: int) -> None:
    """订单状态、步骤、发票、打款任一变更后调用"""
    delete(_order_key(order_id))
