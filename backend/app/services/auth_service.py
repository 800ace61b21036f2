"""
认证服务：登录由外部认证服务负责，这里只签发/解析 JWT 并解析出操作人
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import jwt, JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.core.config import settings
from app.models.user import User


class AuthService:
    """认证服务类"""

    def __init__(self, db: AsyncSession):
        self.db = db

    def create_access_token(self, data: dict, expires_delta: Optional[timedelta] = None) -> str:
        """创建访问令牌（sub 为用户 id）"""
        to_encode = data.copy()
        if "sub" in to_encode:
            to_encode["sub"] = str(to_encode["sub"])
        if expires_delta:
            expire = datetime.now(timezone.utc) + expires_delta
        else:
            expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
        to_encode.update({"exp": expire})
        encoded_jwt = jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
        return encoded_jwt

    async def get_user(self, user_id: int) -> Optional[User]:
        """根据 id 获取用户"""
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_current_user(self, token: str) -> User:
        """解析令牌并返回用户；令牌无效或用户不存在抛 ValueError"""
        credentials_exception = ValueError("无效的认证凭据")
        try:
            payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
            subject = payload.get("sub")
            if subject is None:
                raise credentials_exception
            user_id = int(subject)
        except (JWTError, ValueError):
            raise credentials_exception

        user = await self.get_user(user_id)
        if user is None:
            raise credentials_exception
        return user

    async def update_payout_email(self, user_id: int, payout_email: str) -> User:
        """发布者设置 PayPal 收款邮箱"""
        user = await self.get_user(user_id)
        if user is None:
            raise ValueError("用户不存在")
        user.payout_email = payout_email
        await self.db.commit()
        await self.db.refresh(user)
        return user
