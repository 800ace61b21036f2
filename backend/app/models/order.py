"""
订单模型
"""
import enum

from sqlalchemy import (
    Column, Integer, String, Text, Numeric, Date, DateTime, ForeignKey, JSON,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.core.database import Base, enum_type


class OrderStatus(str, enum.Enum):
    """订单状态（合法迁移见 services/order_state_machine.py）"""
    PENDING = "pending"
    PAYMENT_PENDING = "payment_pending"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    REVISION = "revision"
    COMPLETED = "completed"
    PAYMENT_PROCESSING = "payment_processing"
    PAID = "paid"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class PaymentStatusTag(str, enum.Enum):
    """订单上的资金状态副标签，仅用于展示"""
    NONE = "none"
    PENDING = "pending"
    PAID = "paid"
    PROCESSING = "processing"
    FAILED = "failed"


class ServiceType(str, enum.Enum):
    GUEST_POST = "guest_post"
    LINK_PLACEMENT = "link_placement"
    SPONSORED_CONTENT = "sponsored_content"


class Order(Base):
    """订单表"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    advertiser_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    publisher_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    website_id = Column(Integer, ForeignKey("websites.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    requirements = Column(Text, nullable=True)
    content_brief = Column(Text, nullable=True)
    # 金额在创建时确定，之后不再修改
    subtotal = Column(Numeric(10, 2), nullable=False)
    addon_total = Column(Numeric(10, 2), nullable=False, default=0)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(enum_type(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)
    payment_status = Column(enum_type(PaymentStatusTag), nullable=False, default=PaymentStatusTag.NONE)
    published_url = Column(String(500), nullable=True)  # 发布者交付时填写
    approval_notes = Column(Text, nullable=True)  # 广告主验收/返工意见
    cancellation_reason = Column(Text, nullable=True)
    dispute_reason = Column(Text, nullable=True)
    requested_completion_date = Column(Date, nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # 关系
    advertiser = relationship("User", foreign_keys=[advertiser_id])
    publisher = relationship("User", foreign_keys=[publisher_id])
    website = relationship("Website")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    addons = relationship("OrderAddon", back_populates="order", cascade="all, delete-orphan")
    steps = relationship(
        "OrderStep",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStep.step_number",
    )
    payments = relationship("Payment", back_populates="order", order_by="Payment.id")
    payouts = relationship("Payout", back_populates="order", order_by="Payout.id")

    @property
    def active_payment(self):
        """当前有效（未取消）的发票记录"""
        for payment in reversed(self.payments):
            if payment.invoice_status != "CANCELLED":
                return payment
        return None

    @property
    def current_payout(self):
        """最近一次打款记录（失败的历史记录保留在 payouts 中）"""
        return self.payouts[-1] if self.payouts else None


class OrderItem(Base):
    """订单服务项"""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    service_type = Column(enum_type(ServiceType), nullable=False)
    service_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=False)
    # 按 service_type 区分的配置，结构见 schemas/order.py
    service_config = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="items")


class OrderAddon(Base):
    """订单附加项"""
    __tablename__ = "order_addons"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    addon_type = Column(String(50), nullable=False)
    addon_name = Column(String(100), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="addons")
