"""
收款模型：对应 PayPal 发给广告主的发票
"""
import enum

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base, enum_type


class InvoiceStatus(str, enum.Enum):
    SENT = "SENT"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class Payment(Base):
    """收款表：只在外部发票创建成功后写入，PAID/CANCELLED 只由 webhook 更新"""
    __tablename__ = "payments"
    __table_args__ = (
        # 每个订单至多一条未取消的发票
        Index(
            "uq_payments_order_active",
            "order_id",
            unique=True,
            postgresql_where=text("invoice_status <> 'CANCELLED'"),
            sqlite_where=text("invoice_status <> 'CANCELLED'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    external_invoice_id = Column(String(100), unique=True, nullable=False, index=True)
    invoice_number = Column(String(25), unique=True, nullable=False)  # PayPal 限制 25 字符
    invoice_status = Column(enum_type(InvoiceStatus), nullable=False, default=InvoiceStatus.SENT)
    invoice_url = Column(String(500), nullable=True)
    total_amount = Column(Numeric(10, 2), nullable=False)
    platform_fee = Column(Numeric(10, 2), nullable=False)
    publisher_amount = Column(Numeric(10, 2), nullable=False)
    invoice_sent_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    external_transaction_id = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # 关系
    order = relationship("Order", back_populates="payments")
    payouts = relationship("Payout", back_populates="payment", order_by="Payout.id")
