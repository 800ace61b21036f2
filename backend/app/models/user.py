"""
用户模型
"""
import enum

from sqlalchemy import Column, Integer, String, Boolean, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base, enum_type


class UserRole(str, enum.Enum):
    """用户角色"""
    ADVERTISER = "advertiser"
    PUBLISHER = "publisher"
    ADMIN = "admin"


class User(Base):
    """用户表（认证由外部服务负责，这里只保存订单流程需要的资料）"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(100), unique=True, nullable=False, index=True)
    full_name = Column(String(100), nullable=True)
    role = Column(
        enum_type(UserRole),
        nullable=False,
        default=UserRole.ADVERTISER,
    )
    # 发布者收款地址（PayPal 邮箱），由发布者在设置页配置
    payout_email = Column(String(100), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # 关系
    websites = relationship("Website", back_populates="publisher")
