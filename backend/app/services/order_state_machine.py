"""
订单状态机：合法状态、合法迁移、迁移前的守卫检查

所有修改订单状态的地方（人工操作、发票/打款、webhook、对账任务）都从这里取迁移定义，
不允许直接写 orders.status。守卫只做两件事：
  1. 操作人必须是该迁移预期的一方（发布者 / 广告主）；
  2. 订单当前状态必须等于迁移声明的源状态，过期或重复的请求按冲突拒绝。
真正落库时还要再做一次条件更新（见 OrderService.transition_order），防止检查后被并发修改。
"""
import enum
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from app.core.exceptions import AuthorizationError, ConflictError
from app.models.order import Order, OrderStatus, PaymentStatusTag
from app.models.user import UserRole
from app.schemas.auth import Principal


class Actor(str, enum.Enum):
    """迁移的触发方"""
    PUBLISHER = "publisher"
    ADVERTISER = "advertiser"
    EITHER = "either"        # 任一订单当事方，或管理员
    PROCESSOR = "processor"  # 支付服务 webhook / 对账任务


class OrderEvent(str, enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    INVOICE_PAID = "invoice_paid"
    INVOICE_CANCELLED = "invoice_cancelled"
    SUBMIT_WORK = "submit_work"
    APPROVE = "approve"
    REQUEST_REVISION = "request_revision"
    PAYOUT_INITIATED = "payout_initiated"
    PAYOUT_SUCCEEDED = "payout_succeeded"
    PAYOUT_FAILED = "payout_failed"
    DISPUTE = "dispute"


TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.PAID, OrderStatus.DISPUTED})
ACTIVE_STATUSES = tuple(s for s in OrderStatus if s not in TERMINAL_STATUSES)


@dataclass(frozen=True)
class Transition:
    event: OrderEvent
    sources: Tuple[OrderStatus, ...]
    target: OrderStatus
    actor: Actor
    # 迁移时同步写入的 payment_status 副标签，None 表示不变
    payment_status: Optional[PaymentStatusTag] = None


TRANSITIONS: Dict[OrderEvent, Transition] = {
    t.event: t
    for t in (
        Transition(OrderEvent.ACCEPT, (OrderStatus.PENDING,), OrderStatus.PAYMENT_PENDING,
                   Actor.PUBLISHER, PaymentStatusTag.PENDING),
        Transition(OrderEvent.REJECT, (OrderStatus.PENDING,), OrderStatus.CANCELLED,
                   Actor.PUBLISHER),
        Transition(OrderEvent.INVOICE_PAID, (OrderStatus.PAYMENT_PENDING,), OrderStatus.IN_PROGRESS,
                   Actor.PROCESSOR, PaymentStatusTag.PAID),
        Transition(OrderEvent.INVOICE_CANCELLED, (OrderStatus.PAYMENT_PENDING,), OrderStatus.PENDING,
                   Actor.PROCESSOR, PaymentStatusTag.NONE),
        # revision -> review 即重新提交
        Transition(OrderEvent.SUBMIT_WORK, (OrderStatus.IN_PROGRESS, OrderStatus.REVISION), OrderStatus.REVIEW,
                   Actor.PUBLISHER),
        Transition(OrderEvent.APPROVE, (OrderStatus.REVIEW,), OrderStatus.COMPLETED,
                   Actor.ADVERTISER),
        Transition(OrderEvent.REQUEST_REVISION, (OrderStatus.REVIEW,), OrderStatus.REVISION,
                   Actor.ADVERTISER),
        Transition(OrderEvent.PAYOUT_INITIATED, (OrderStatus.COMPLETED,), OrderStatus.PAYMENT_PROCESSING,
                   Actor.ADVERTISER, PaymentStatusTag.PROCESSING),
        Transition(OrderEvent.PAYOUT_SUCCEEDED, (OrderStatus.PAYMENT_PROCESSING,), OrderStatus.PAID,
                   Actor.PROCESSOR, PaymentStatusTag.PAID),
        # 金额不变，等待广告主/运营重新发起打款
        Transition(OrderEvent.PAYOUT_FAILED, (OrderStatus.PAYMENT_PROCESSING,), OrderStatus.COMPLETED,
                   Actor.PROCESSOR, PaymentStatusTag.FAILED),
        Transition(OrderEvent.DISPUTE, ACTIVE_STATUSES, OrderStatus.DISPUTED,
                   Actor.EITHER),
    )
}


def get_transition(event: OrderEvent) -> Transition:
    return TRANSITIONS[event]


def is_terminal(status: OrderStatus) -> bool:
    return OrderStatus(status) in TERMINAL_STATUSES


def can_apply(status: OrderStatus, event: OrderEvent) -> bool:
    """当前状态下该事件是否合法"""
    return OrderStatus(status) in TRANSITIONS[event].sources


def allowed_events(status: OrderStatus) -> list[OrderEvent]:
    """当前状态下所有合法事件（前端据此渲染操作按钮）"""
    return [event for event, t in TRANSITIONS.items() if OrderStatus(status) in t.sources]


def actor_matches(principal: Principal, order: Order, actor: Actor) -> bool:
    """判断操作人是否为该迁移预期的一方"""
    if actor == Actor.PUBLISHER:
        return principal.user_id == order.publisher_id
    if actor == Actor.ADVERTISER:
        return principal.user_id == order.advertiser_id
    if actor == Actor.EITHER:
        return (
            principal.role == UserRole.ADMIN
            or principal.user_id in (order.advertiser_id, order.publisher_id)
        )
    # PROCESSOR 迁移不接受人工触发
    return False


def resolve_source(order: Order, transition: Transition) -> OrderStatus:
    """返回本次迁移使用的源状态；当前状态不在源状态中时按冲突拒绝"""
    current = OrderStatus(order.status)
    if current not in transition.sources:
        raise ConflictError(
            f"Order is {current.value}; cannot {transition.event.value.replace('_', ' ')}",
            order_id=order.id,
            event=transition.event.value,
        )
    return current


def guard(principal: Optional[Principal], order: Order, event: OrderEvent) -> Tuple[Transition, OrderStatus]:
    """
    迁移前检查，返回 (迁移定义, 源状态)。
    principal 为 None 表示由支付服务触发，只能用于 PROCESSOR 迁移。
    """
    transition = get_transition(event)
    if transition.actor == Actor.PROCESSOR:
        if principal is not None:
            raise AuthorizationError(
                "This change can only be made by the payment provider",
                order_id=order.id,
                event=event.value,
            )
    elif principal is None or not actor_matches(principal, order, transition.actor):
        who = {
            Actor.PUBLISHER: "the publisher of this website",
            Actor.ADVERTISER: "the advertiser who placed this order",
            Actor.EITHER: "a party to this order",
        }[transition.actor]
        raise AuthorizationError(
            f"Only {who} can {event.value.replace('_', ' ')}",
            order_id=order.id,
            event=event.value,
        )
    return transition, resolve_source(order, transition)
