"""
订单流程步骤模型
"""
import enum

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from app.core.database import Base, enum_type


class StepStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class StepAssignee(str, enum.Enum):
    PUBLISHER = "publisher"
    ADVERTISER = "advertiser"
    BOTH = "both"


class OrderStep(Base):
    """订单步骤表：创建订单时一次性生成，之后只改状态"""
    __tablename__ = "order_steps"
    __table_args__ = (
        UniqueConstraint("order_id", "step_number", name="uq_order_steps_order_step"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    step_number = Column(Integer, nullable=False)
    name = Column(String(50), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(enum_type(StepStatus), nullable=False, default=StepStatus.PENDING)
    assignee = Column(enum_type(StepAssignee), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)

    order = relationship("Order", back_populates="steps")
