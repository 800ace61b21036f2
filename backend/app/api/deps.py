"""
通用依赖：客户端 IP、支付服务客户端
"""
from typing import Optional

from fastapi import Request

from app.services.paypal_client import PayPalClient

_payment_processor: Optional[PayPalClient] = None


def get_client_ip(request: Request) -> Optional[str]:
    """优先取反向代理透传的 X-Forwarded-For 第一个地址"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def get_payment_processor() -> PayPalClient:
    """支付服务客户端（懒加载单例）；测试中通过 dependency_overrides 替换"""
    global _payment_processor
    if _payment_processor is None:
        _payment_processor = PayPalClient()
    return _payment_processor
