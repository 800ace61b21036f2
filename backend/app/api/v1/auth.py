"""
认证相关API：当前用户、操作人解析、收款邮箱设置
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.config import settings
from app.api.deps import get_client_ip
from app.models.user import UserRole
from app.schemas.auth import Principal, UpdatePayoutEmailRequest, UserResponse
from app.services.auth_service import AuthService
from app.services.audit_service import log_audit

router = APIRouter()
# 令牌由外部认证服务签发，tokenUrl 仅用于 OpenAPI 文档
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/auth/token")


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db)
) -> UserResponse:
    """获取当前用户信息"""
    auth_service = AuthService(db)
    try:
        user = await auth_service.get_current_user(token)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return UserResponse.model_validate(user)


async def get_current_active_user(
    current_user: UserResponse = Depends(get_current_user)
) -> UserResponse:
    """获取当前活跃用户"""
    if not current_user.is_active:
        raise HTTPException(status_code=403, detail="用户未激活")
    return current_user


async def get_current_principal(
    current_user: UserResponse = Depends(get_current_active_user)
) -> Principal:
    """当前操作人，显式传给各业务服务"""
    return current_user.to_principal()


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: UserResponse = Depends(get_current_user)):
    """获取当前用户信息"""
    return current_user


@router.put("/me/payout-email", response_model=UserResponse)
async def update_payout_email(
    body: UpdatePayoutEmailRequest,
    request: Request,
    current_user: UserResponse = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
):
    """发布者设置 PayPal 收款邮箱（打款前必须配置）"""
    if current_user.role != UserRole.PUBLISHER:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only publishers receive payouts")
    auth_service = AuthService(db)
    user = await auth_service.update_payout_email(current_user.id, str(body.payout_email))
    await log_audit(db, current_user.id, "update_payout_email", "user", str(user.id), None, get_client_ip(request), getattr(request.state, "request_id", None))
    return UserResponse.model_validate(user)
