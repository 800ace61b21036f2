"""
打款服务：广告主验收后向发布者发起 PayPal Payout

与开票相反，打款先写本地：Payout 行以 PENDING 提交后再调外部接口，
外部失败时同一行改为 FAILED 并记录原因（订单保持 completed，可重试）；
外部成功后 Payout 改为 PROCESSING，订单 completed -> payment_processing，一次提交。
结果未知（2xx 响应无法解析或其他异常）时 Payout 保持 PENDING 并标记人工对账，不允许自动重试。
"""
import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ExternalResponseError,
    ExternalServiceError,
    ReconciliationError,
    ValidationError,
)
from app.models.order import Order
from app.models.payment import InvoiceStatus, Payment
from app.models.payout import Payout, PayoutStatus
from app.models.user import User
from app.schemas.auth import Principal
from app.services.audit_service import flag_operator_attention
from app.services.order_service import OrderService, utcnow
from app.services.order_state_machine import OrderEvent, guard

logger = logging.getLogger(__name__)


class PayoutService:
    """打款服务类；processor 为支付服务客户端（PayPalClient 或测试替身）"""

    def __init__(self, db: AsyncSession, processor):
        self.db = db
        self.processor = processor
        self.orders = OrderService(db)

    async def _open_payout(self, payment_id: int) -> Optional[Payout]:
        """未失败的打款（PENDING / PROCESSING / SUCCESS）"""
        result = await self.db.execute(
            select(Payout).where(
                Payout.payment_id == payment_id,
                Payout.payout_status != PayoutStatus.FAILED,
            )
        )
        return result.scalars().first()

    async def _flag_unknown_outcome(self, order_id: int, payout_id: int, error: Exception) -> None:
        """外部打款结果未知：PayPal 可能已经打出，Payout 保持 PENDING，等人工核实"""
        await self.db.rollback()
        logger.critical(
            "打款请求结果未知，需人工核实 PayPal 是否已打款 order=%s payout=%s: %r",
            order_id, payout_id, error,
        )
        await flag_operator_attention(
            self.db, "payout", payout_id, "payout request outcome unknown",
            order_id=order_id, error=str(error),
        )

    async def issue_payout(self, principal: Principal, order_id: int) -> Order:
        """
        发起打款。前置条件：订单 completed、发票 PAID、没有未失败的打款、发布者已配置收款邮箱。
        外部调用失败抛 ExternalServiceError（Payout 行已记为 FAILED）；
        结果未知抛 ReconciliationError（Payout 行保持 PENDING，已标记人工对账）。
        """
        order = await self.orders.get_order_for(principal, order_id)
        transition, source = guard(principal, order, OrderEvent.PAYOUT_INITIATED)

        result = await self.db.execute(
            select(Payment).where(Payment.order_id == order_id, Payment.invoice_status == InvoiceStatus.PAID)
        )
        payment = result.scalars().first()
        if payment is None:
            raise ValidationError("The invoice for this order has not been paid", order_id=order_id)

        if await self._open_payout(payment.id) is not None:
            raise AlreadyExistsError("A payout already exists for this order", order_id=order_id)

        publisher = (await self.db.execute(select(User).where(User.id == order.publisher_id))).scalar_one_or_none()
        destination = publisher.payout_email if publisher else None
        if not destination:
            raise ValidationError(
                "The publisher has not configured a PayPal payout email yet",
                order_id=order_id,
                publisher_id=order.publisher_id,
            )

        # 1. 先落库 PENDING，记录打款意图
        payout = Payout(
            payment_id=payment.id,
            order_id=order.id,
            publisher_id=order.publisher_id,
            amount=payment.publisher_amount,
            publisher_destination_address=destination,
            payout_status=PayoutStatus.PENDING,
        )
        self.db.add(payout)
        try:
            await self.db.commit()
        except IntegrityError as e:
            # 并发请求已经插入了未失败的打款
            await self.db.rollback()
            raise AlreadyExistsError("A payout already exists for this order", order_id=order_id) from e
        payout_id = payout.id
        logger.info("打款记录已创建 payout=%s order=%s amount=%s", payout_id, order_id, payout.amount)

        # 2. 调外部接口
        try:
            created = await self.processor.create_payout(
                payout_id=payout_id,
                order_id=order.id,
                order_title=order.title,
                amount=payout.amount,
                receiver_email=destination,
            )
        except ExternalResponseError as e:
            await self._flag_unknown_outcome(order_id, payout_id, e)
            raise ReconciliationError(order_id=order_id, payout_id=payout_id) from e
        except ExternalServiceError as e:
            payout.payout_status = PayoutStatus.FAILED
            payout.failure_reason = e.detail
            payout.completed_at = utcnow()
            await self.db.commit()
            logger.error("订单 %s 打款失败 payout=%s: %s %s", order_id, payout_id, e.detail, e.context)
            raise
        except Exception as e:
            await self._flag_unknown_outcome(order_id, payout_id, e)
            raise ReconciliationError(order_id=order_id, payout_id=payout_id) from e

        # 3. 外部成功：Payout -> PROCESSING，订单 -> payment_processing
        now = utcnow()
        try:
            payout.payout_status = PayoutStatus.PROCESSING
            payout.external_batch_id = created.batch_id
            payout.external_item_id = created.item_id
            payout.initiated_at = now
            moved = await self.orders.transition_order(order, transition, source)
            if moved:
                await self.db.commit()
            else:
                # 订单已被并发修改（如进入争议）；打款已真实发出，仍要记下外部标识
                await self.db.rollback()
                await self.db.execute(
                    update(Payout)
                    .where(Payout.id == payout_id)
                    .values(
                        payout_status=PayoutStatus.PROCESSING,
                        external_batch_id=created.batch_id,
                        external_item_id=created.item_id,
                        initiated_at=now,
                    )
                )
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.critical(
                "打款已在 PayPal 发出但本地保存失败，需人工对账 order=%s payout=%s batch=%s item=%s: %s",
                order_id, payout_id, created.batch_id, created.item_id, e,
            )
            await flag_operator_attention(
                self.db, "payout", payout_id, "payout sent externally but not persisted",
                order_id=order_id, batch_id=created.batch_id, item_id=created.item_id,
            )
            raise ReconciliationError(order_id=order_id, payout_id=payout_id) from e

        if not moved:
            logger.critical(
                "打款已发出但订单状态已被并发修改 order=%s payout=%s batch=%s",
                order_id, payout_id, created.batch_id,
            )
            await flag_operator_attention(
                self.db, "payout", payout_id, "payout sent for an order that changed state",
                order_id=order_id, batch_id=created.batch_id,
            )
            raise ConflictError(order_id=order_id, payout_id=payout_id)

        logger.info(
            "订单 %s 打款已发起 payout=%s batch=%s item=%s",
            order_id, payout_id, created.batch_id, created.item_id,
        )
        return await self.orders.get_order(order_id)
