"""
打款模型：平台打给发布者的 PayPal Payout
"""
import enum

from sqlalchemy import Column, Integer, String, Text, Numeric, DateTime, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base, enum_type


class PayoutStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# 终态：webhook 不得再改写
TERMINAL_PAYOUT_STATUSES = (PayoutStatus.SUCCESS, PayoutStatus.FAILED)


class Payout(Base):
    """打款表：调用外部接口之前先写 PENDING，失败记录保留为历史"""
    __tablename__ = "payouts"
    __table_args__ = (
        # 同一笔收款至多一条未失败的打款；FAILED 的行不阻塞重试
        Index(
            "uq_payouts_payment_open",
            "payment_id",
            unique=True,
            postgresql_where=text("payout_status <> 'FAILED'"),
            sqlite_where=text("payout_status <> 'FAILED'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    publisher_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)  # = payment.publisher_amount，创建后不再重算
    publisher_destination_address = Column(String(100), nullable=False)
    payout_status = Column(enum_type(PayoutStatus), nullable=False, default=PayoutStatus.PENDING)
    external_batch_id = Column(String(100), nullable=True, index=True)
    external_item_id = Column(String(100), nullable=True, index=True)
    initiated_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # 关系
    payment = relationship("Payment", back_populates="payouts")
    order = relationship("Order", back_populates="payouts")
