"""
操作审计服务：记录关键操作到 audit_logs 表
支付服务触发的变更 user_id 为空；需要运营人工介入的情况记为 operator_attention
"""
import json
import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from app.core.config import settings
from app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

OPERATOR_ATTENTION = "operator_attention"


async def log_audit(
    db: AsyncSession,
    user_id: Optional[int],
    action: str,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    detail: Optional[dict[str, Any]] = None,
    ip: Optional[str] = None,
    request_id: Optional[str] = None,
    commit: bool = True,
) -> None:
    """
    写入一条审计日志。若未启用 AUDIT_LOG_ENABLED 则跳过。
    commit=False 时只 add，由调用方随业务事务一起提交。
    """
    if not getattr(settings, "AUDIT_LOG_ENABLED", True):
        return
    detail_str = json.dumps(detail, ensure_ascii=False, default=str) if isinstance(detail, dict) else (str(detail) if detail else None)
    entry = AuditLog(
        user_id=user_id,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        detail=detail_str,
        ip=ip,
        request_id=request_id,
    )
    db.add(entry)
    if not commit:
        return
    try:
        await db.commit()
    except Exception as e:
        logger.warning("审计日志写入失败: %s", e)
        await db.rollback()


async def flag_operator_attention(
    db: AsyncSession,
    resource_type: str,
    resource_id: Any,
    reason: str,
    **detail: Any,
) -> None:
    """标记需要运营人工处理的记录（打款失败、外部资源无本地记录、收款后订单无法推进等）"""
    logger.error("需人工处理 %s#%s: %s %s", resource_type, resource_id, reason, detail or "")
    await log_audit(
        db,
        user_id=None,
        action=OPERATOR_ATTENTION,
        resource_type=resource_type,
        resource_id=resource_id,
        detail={"reason": reason, **detail},
    )
