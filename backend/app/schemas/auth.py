"""
认证相关Schema
"""
from pydantic import BaseModel, EmailStr
from datetime import datetime
from typing import Optional

from app.models.user import UserRole


class Principal(BaseModel):
    """已认证的操作人，显式传入每个业务调用"""
    user_id: int
    role: UserRole

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class UserResponse(BaseModel):
    """用户响应"""
    id: int
    email: str
    full_name: Optional[str] = None
    role: UserRole
    payout_email: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    def to_principal(self) -> Principal:
        return Principal(user_id=self.id, role=self.role)


class Token(BaseModel):
    """Token响应"""
    access_token: str
    token_type: str = "bearer"


class UpdatePayoutEmailRequest(BaseModel):
    """发布者设置收款邮箱"""
    payout_email: EmailStr
