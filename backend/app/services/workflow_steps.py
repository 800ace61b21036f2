"""
订单流程步骤：Acceptance / Work Delivery / Approval

步骤状态完全由订单状态推导（STEP_STATUSES_BY_ORDER_STATUS），每次订单迁移时在同一事务里
按目标状态重新对齐一遍，不再单独修改某一步，因此不会出现订单状态与步骤不同步的情况。
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from app.models.order import Order, OrderStatus
from app.models.order_step import OrderStep, StepAssignee, StepStatus
from app.services.order_state_machine import OrderEvent, get_transition

logger = logging.getLogger(__name__)

# (step_number, name, description, assignee)
STEP_DEFINITIONS = (
    (1, "Acceptance", "Publisher reviews the order and accepts or rejects it", StepAssignee.PUBLISHER),
    (2, "Work Delivery", "Publisher completes the work and submits the published URL", StepAssignee.PUBLISHER),
    (3, "Approval", "Advertiser reviews the delivered work", StepAssignee.ADVERTISER),
)

_P = StepStatus.PENDING
_I = StepStatus.IN_PROGRESS
_C = StepStatus.COMPLETED
_S = StepStatus.SKIPPED

# 订单状态 -> (步骤1, 步骤2, 步骤3)；disputed 不在表中，争议期间冻结步骤
STEP_STATUSES_BY_ORDER_STATUS: Dict[OrderStatus, Tuple[StepStatus, StepStatus, StepStatus]] = {
    OrderStatus.PENDING: (_I, _P, _P),
    OrderStatus.PAYMENT_PENDING: (_C, _P, _P),
    OrderStatus.IN_PROGRESS: (_C, _I, _P),
    OrderStatus.REVIEW: (_C, _C, _I),
    OrderStatus.REVISION: (_C, _I, _P),
    OrderStatus.COMPLETED: (_C, _C, _C),
    OrderStatus.PAYMENT_PROCESSING: (_C, _C, _C),
    OrderStatus.PAID: (_C, _C, _C),
    OrderStatus.CANCELLED: (_S, _S, _S),
}


def expected_step_statuses(status: OrderStatus) -> Optional[Tuple[StepStatus, StepStatus, StepStatus]]:
    return STEP_STATUSES_BY_ORDER_STATUS.get(OrderStatus(status))


def build_steps(now: Optional[datetime] = None) -> List[OrderStep]:
    """创建订单时生成全部步骤（订单初始状态为 pending）"""
    now = now or datetime.now(timezone.utc)
    statuses = STEP_STATUSES_BY_ORDER_STATUS[OrderStatus.PENDING]
    steps = []
    for (number, name, description, assignee), status in zip(STEP_DEFINITIONS, statuses):
        steps.append(OrderStep(
            step_number=number,
            name=name,
            description=description,
            assignee=assignee,
            status=status,
            started_at=now if status == StepStatus.IN_PROGRESS else None,
        ))
    return steps


def sync_steps(
    order: Order,
    status: OrderStatus,
    now: Optional[datetime] = None,
    notes: Optional[Dict[int, str]] = None,
) -> List[int]:
    """
    把 order.steps 对齐到订单状态 status 对应的步骤状态，返回发生变化的步骤号。
    notes: {step_number: 追加的备注}
    调用方负责在同一事务中提交。
    """
    expected = expected_step_statuses(status)
    if expected is None:
        return []
    now = now or datetime.now(timezone.utc)
    changed = []
    for step in order.steps:
        target = expected[step.step_number - 1]
        if notes and step.step_number in notes:
            step.notes = f"{step.notes}\n{notes[step.step_number]}" if step.notes else notes[step.step_number]
        if step.status == target:
            continue
        if target == StepStatus.IN_PROGRESS:
            step.started_at = now
            step.completed_at = None
        elif target == StepStatus.COMPLETED:
            step.started_at = step.started_at or now
            step.completed_at = now
        elif target == StepStatus.PENDING:
            step.started_at = None
            step.completed_at = None
        step.status = target
        changed.append(step.step_number)
    if changed:
        logger.debug("订单 %s 步骤变更 %s -> %s", order.id, changed, OrderStatus(status).value)
    return changed


def current_step(order: Order) -> Optional[OrderStep]:
    """进行中的步骤；没有则取第一个待处理步骤"""
    for wanted in (StepStatus.IN_PROGRESS, StepStatus.PENDING):
        for step in order.steps:
            if step.status == wanted:
                return step
    return None


class WorkflowStepTracker:
    """按业务事件命名的步骤推进入口，全部委托给 sync_steps"""

    def advance_on_accept(self, order: Order) -> List[int]:
        return sync_steps(order, OrderStatus.PAYMENT_PENDING)

    def advance_on_payment_confirmed(self, order: Order) -> List[int]:
        return sync_steps(order, OrderStatus.IN_PROGRESS)

    def advance_on_work_submitted(self, order: Order) -> List[int]:
        return sync_steps(order, OrderStatus.REVIEW)

    def advance_on_approved(self, order: Order) -> List[int]:
        return sync_steps(order, OrderStatus.COMPLETED)

    def advance_on_revision_requested(self, order: Order, notes: Optional[str] = None) -> List[int]:
        return sync_steps(
            order,
            OrderStatus.REVISION,
            notes={2: f"Revision requested: {notes}"} if notes else None,
        )

    def advance_to(self, order: Order, status: OrderStatus) -> List[int]:
        """其余迁移（拒绝、发票取消、打款结果）"""
        return sync_steps(order, status)

    def advance(self, order: Order, event: OrderEvent, notes: Optional[str] = None) -> List[int]:
        """订单迁移落库时调用，按事件选择推进方式"""
        if event == OrderEvent.ACCEPT:
            return self.advance_on_accept(order)
        if event == OrderEvent.INVOICE_PAID:
            return self.advance_on_payment_confirmed(order)
        if event == OrderEvent.SUBMIT_WORK:
            return self.advance_on_work_submitted(order)
        if event == OrderEvent.APPROVE:
            return self.advance_on_approved(order)
        if event == OrderEvent.REQUEST_REVISION:
            return self.advance_on_revision_requested(order, notes)
        return self.advance_to(order, get_transition(event).target)
