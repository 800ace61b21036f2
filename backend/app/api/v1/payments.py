"""
支付回调API：PayPal webhook
"""
import asyncio
import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import ExternalServiceError
from app.api.deps import get_payment_processor
from app.services import cache_service
from app.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/webhooks/paypal")
async def paypal_webhook_alive():
    """PayPal 配置 webhook 时的连通性检查"""
    return {"status": "ok", "message": "PayPal webhook endpoint is active"}


@router.post("/webhooks/paypal")
async def paypal_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    processor=Depends(get_payment_processor),
):
    """
    接收 PayPal webhook：验签 -> 按事件类型处理。
    200 已处理或重复投递；400 请求体无效；401 验签失败；404 本地无对应记录；500 意外错误（PayPal 会重投）。
    """
    raw = await request.body()
    try:
        event = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        return JSONResponse(status_code=400, content={"status": "error", "detail": "Invalid JSON body"})
    if not isinstance(event, dict):
        return JSONResponse(status_code=400, content={"status": "error", "detail": "Invalid JSON body"})

    service = WebhookService(db, processor)
    try:
        verified = await service.verify(request.headers, event)
    except ExternalServiceError as e:
        logger.error("webhook 验签请求失败 event=%s: %s", event.get("id"), e.context)
        return JSONResponse(status_code=500, content={"status": "error", "detail": "Signature verification unavailable"})
    if not verified:
        logger.warning("webhook 验签失败 event=%s type=%s", event.get("id"), event.get("event_type"))
        return JSONResponse(status_code=401, content={"status": "error", "detail": "Invalid signature"})

    try:
        outcome = await service.dispatch(event)
    except Exception as e:
        logger.exception("webhook 处理异常 event=%s type=%s: %s", event.get("id"), event.get("event_type"), e)
        return JSONResponse(status_code=500, content={"status": "error", "detail": "Internal error"})

    if outcome.order_id is not None:
        await asyncio.to_thread(cache_service.invalidate_order_cache, outcome.order_id)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
