"""
Celery 任务模块：支付对账
"""
from app.tasks.payment_tasks import reconcile_stale_payments_task

__all__ = [
    "reconcile_stale_payments_task",
]
