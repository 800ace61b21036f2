"""操作审计 API"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.models.audit_log import AuditLog
from app.schemas.audit import AuditLogItem, AuditLogListResponse
from app.api.v1.auth import get_current_principal
from app.schemas.auth import Principal

router = APIRouter()


@router.get("", response_model=AuditLogListResponse)
async def list_audit_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    action: Optional[str] = Query(None, description="按操作类型筛选，如 operator_attention"),
    resource_type: Optional[str] = Query(None, description="order / payment / payout / user"),
    resource_id: Optional[str] = Query(None),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    普通用户只看自己发起的操作；管理员看全部，
    包括支付回调写入的记录（user_id 为空）与需人工处理的标记。
    """
    conditions = []
    if not principal.is_admin:
        conditions.append(AuditLog.user_id == principal.user_id)
    if action:
        conditions.append(AuditLog.action == action)
    if resource_type:
        conditions.append(AuditLog.resource_type == resource_type)
    if resource_id:
        conditions.append(AuditLog.resource_id == resource_id)

    total = (await db.execute(select(func.count()).select_from(AuditLog).where(*conditions))).scalar() or 0
    result = await db.execute(
        select(AuditLog)
        .where(*conditions)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return AuditLogListResponse(
        items=[AuditLogItem.model_validate(x) for x in result.scalars().all()],
        total=total,
        page=page,
        page_size=page_size,
    )
