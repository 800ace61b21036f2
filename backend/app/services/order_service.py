"""
订单服务：创建、查询、人工操作（拒绝 / 交付 / 验收 / 返工 / 争议）

订单状态只通过 transition_order 修改：UPDATE orders SET status = 目标 WHERE id = ? AND status = 源状态，
影响 0 行说明订单已被并发修改，按冲突处理。步骤在同一事务中按目标状态重新对齐。
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, update, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from app.core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.models.order import Order, OrderAddon, OrderItem, OrderStatus, PaymentStatusTag
from app.models.user import UserRole
from app.models.website import Website
from app.schemas.auth import Principal
from app.schemas.order import OrderCreate
from app.services.order_state_machine import OrderEvent, Transition, guard
from app.services.workflow_steps import WorkflowStepTracker, build_steps

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def quantize_money(value) -> Decimal:
    """金额统一保留两位小数，四舍五入（ROUND_HALF_UP）"""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def can_view(principal: Principal, order: Order) -> bool:
    return principal.is_admin or principal.user_id in (order.advertiser_id, order.publisher_id)


class OrderService:
    """订单服务类"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.steps = WorkflowStepTracker()

    # ==========================================================
    # 查询
    # ==========================================================
    @staticmethod
    def _order_query():
        return select(Order).options(
            selectinload(Order.items),
            selectinload(Order.addons),
            selectinload(Order.steps),
            selectinload(Order.payments),
            selectinload(Order.payouts),
        )

    async def get_order(self, order_id: int) -> Order:
        """按 id 读取订单（含明细、步骤、发票、打款），每次都从库里重新加载"""
        result = await self.db.execute(
            self._order_query()
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError("Order not found", order_id=order_id)
        return order

    async def get_order_for(self, principal: Principal, order_id: int) -> Order:
        """读取订单并校验可见性；非当事方按不存在处理"""
        order = await self.get_order(order_id)
        if not can_view(principal, order):
            raise NotFoundError("Order not found", order_id=order_id, user_id=principal.user_id)
        return order

    async def list_orders(
        self,
        principal: Principal,
        status: Optional[OrderStatus] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Order], int]:
        """广告主看自己下的单，发布者看自己网站收到的单，管理员看全部"""
        conditions = []
        if not principal.is_admin:
            conditions.append(
                or_(Order.advertiser_id == principal.user_id, Order.publisher_id == principal.user_id)
            )
        if status is not None:
            conditions.append(Order.status == status)

        count_stmt = select(func.count()).select_from(Order).where(*conditions)
        total = (await self.db.execute(count_stmt)).scalar() or 0
        stmt = (
            self._order_query()
            .where(*conditions)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    # ==========================================================
    # 创建
    # ==========================================================
    async def create_order(self, principal: Principal, order_data: OrderCreate) -> Order:
        """广告主下单：金额在此一次算定，订单与三个步骤在同一事务中写入"""
        if principal.role != UserRole.ADVERTISER:
            raise AuthorizationError("Only advertisers can place orders", user_id=principal.user_id)

        result = await self.db.execute(select(Website).where(Website.id == order_data.website_id))
        website = result.scalar_one_or_none()
        if website is None or not website.is_active:
            raise NotFoundError("Website not found", website_id=order_data.website_id)
        if website.publisher_id == principal.user_id:
            raise ValidationError("You cannot order placements on your own website")

        items = []
        for item in order_data.items:
            total_price = quantize_money(item.unit_price * item.quantity)
            items.append(OrderItem(
                service_type=item.service_type,
                service_name=item.service_name,
                description=item.description,
                quantity=item.quantity,
                unit_price=quantize_money(item.unit_price),
                total_price=total_price,
                service_config=item.service_config.model_dump(mode="json") if item.service_config else None,
            ))
        addons = [
            OrderAddon(addon_type=a.addon_type, addon_name=a.addon_name, price=quantize_money(a.price))
            for a in order_data.addons
        ]
        subtotal = sum((i.total_price for i in items), Decimal("0"))
        addon_total = sum((a.price for a in addons), Decimal("0"))

        order = Order(
            advertiser_id=principal.user_id,
            publisher_id=website.publisher_id,
            website_id=website.id,
            title=order_data.title,
            description=order_data.description,
            requirements=order_data.requirements,
            content_brief=order_data.content_brief,
            requested_completion_date=order_data.requested_completion_date,
            subtotal=quantize_money(subtotal),
            addon_total=quantize_money(addon_total),
            total_amount=quantize_money(subtotal + addon_total),
            status=OrderStatus.PENDING,
            payment_status=PaymentStatusTag.NONE,
            items=items,
            addons=addons,
            steps=build_steps(utcnow()),
        )
        self.db.add(order)
        await self.db.commit()
        logger.info(
            "订单已创建 order=%s advertiser=%s website=%s total=%s",
            order.id, principal.user_id, website.id, order.total_amount,
        )
        return await self.get_order(order.id)

    # ==========================================================
    # 状态迁移
    # ==========================================================
    async def transition_order(
        self,
        order: Order,
        transition: Transition,
        source: OrderStatus,
        values: Optional[Dict[str, Any]] = None,
        step_notes: Optional[str] = None,
    ) -> bool:
        """
        条件更新订单状态并对齐步骤，不提交。
        返回 False 表示订单状态已不是 source（并发修改），此时什么都没写。
        """
        now = utcnow()
        data: Dict[str, Any] = {"status": transition.target, "updated_at": now}
        if transition.payment_status is not None:
            data["payment_status"] = transition.payment_status
        if values:
            data.update(values)
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == source)
            .values(**data)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return False
        # 已经写库的值直接同步到内存对象，避免 flush 时再更新一次
        for key, value in data.items():
            set_committed_value(order, key, value)
        self.steps.advance(order, transition.event, step_notes)
        logger.info(
            "订单 %s 状态 %s -> %s (%s)",
            order.id, source.value, transition.target.value, transition.event.value,
        )
        return True

    async def apply_transition(
        self,
        principal: Optional[Principal],
        order: Order,
        event: OrderEvent,
        values: Optional[Dict[str, Any]] = None,
        step_notes: Optional[str] = None,
    ) -> Transition:
        """守卫检查 + 条件更新；丢失竞争时回滚并抛 ConflictError。调用方负责提交。"""
        order_id = order.id
        transition, source = guard(principal, order, event)
        if not await self.transition_order(order, transition, source, values, step_notes):
            await self.db.rollback()
            logger.info("订单 %s 迁移 %s 丢失竞争，状态已被修改", order_id, event.value)
            raise ConflictError(order_id=order_id, event=event.value)
        return transition

    async def _act(
        self,
        principal: Principal,
        order_id: int,
        event: OrderEvent,
        values: Optional[Dict[str, Any]] = None,
        step_notes: Optional[str] = None,
    ) -> Order:
        order = await self.get_order_for(principal, order_id)
        await self.apply_transition(principal, order, event, values, step_notes)
        await self.db.commit()
        return await self.get_order(order_id)

    async def reject_order(self, principal: Principal, order_id: int, reason: Optional[str] = None) -> Order:
        """发布者拒单：pending -> cancelled"""
        return await self._act(principal, order_id, OrderEvent.REJECT, {"cancellation_reason": reason})

    async def submit_work(self, principal: Principal, order_id: int, published_url: str) -> Order:
        """发布者交付（含返工后重新提交）：in_progress / revision -> review"""
        return await self._act(principal, order_id, OrderEvent.SUBMIT_WORK, {"published_url": published_url})

    async def approve_order(self, principal: Principal, order_id: int, notes: Optional[str] = None) -> Order:
        """广告主验收：review -> completed。打款由调用方随后发起（见 PayoutService）"""
        values: Dict[str, Any] = {"completed_at": utcnow()}
        if notes:
            values["approval_notes"] = notes
        return await self._act(principal, order_id, OrderEvent.APPROVE, values)

    async def request_revision(self, principal: Principal, order_id: int, notes: str) -> Order:
        """广告主要求返工：review -> revision，意见追加到步骤 2 备注"""
        if not notes or not notes.strip():
            raise ValidationError("Revision notes are required")
        return await self._act(
            principal,
            order_id,
            OrderEvent.REQUEST_REVISION,
            {"approval_notes": notes},
            step_notes=notes,
        )

    async def dispute_order(self, principal: Principal, order_id: int, reason: str) -> Order:
        """任一当事方发起争议：任意非终态 -> disputed，之后由运营线下处理"""
        if not reason or not reason.strip():
            raise ValidationError("A dispute reason is required")
        return await self._act(principal, order_id, OrderEvent.DISPUTE, {"dispute_reason": reason})
