"""
支付对账任务：定时查询长时间没有收到 webhook 的发票/打款，按 webhook 同一路径补处理
由 Celery beat 按 RECONCILE_INTERVAL_SECONDS 触发。
注意：必须使用任务内创建的 engine/session（create_async_engine_and_session_for_celery），
不能使用全局 AsyncSessionLocal，否则会报 "Future attached to a different loop"。
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict

from app.celery_app import celery_app
from app.core.config import settings
from app.core.database import create_async_engine_and_session_for_celery
from app.services.paypal_client import PayPalClient
from app.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)


def _run_async(coro):
    """在同步上下文中运行异步协程（Celery 任务内使用）"""
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _with_celery_db(async_fn):
    """在任务内创建当前 loop 的 engine/session，执行 async_fn(db)，用完后 dispose engine。"""
    async def _run():
        engine, session_factory = create_async_engine_and_session_for_celery()
        try:
            async with session_factory() as db:
                return await async_fn(db)
        finally:
            await engine.dispose()
    return _run


@celery_app.task(bind=True, name="payments.reconcile_stale")
def reconcile_stale_payments_task(self) -> Dict[str, int]:
    """对账：超过 RECONCILE_STALE_AFTER_MINUTES 仍为 SENT 的发票、仍为 PROCESSING 的打款"""
    older_than = datetime.now(timezone.utc) - timedelta(minutes=settings.RECONCILE_STALE_AFTER_MINUTES)

    async def _run(db):
        service = WebhookService(db, PayPalClient())
        return await service.reconcile_stale(older_than)

    try:
        return _run_async(_with_celery_db(_run)())
    except Exception as e:
        logger.exception("reconcile_stale_payments_task failed: %s", e)
        raise
