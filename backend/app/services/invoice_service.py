"""
发票服务：发布者接单时向广告主开具 PayPal 发票

先调外部接口，成功后再写本地：Payment 行 + 订单 pending -> payment_pending + 步骤 1 完成，一次提交。
外部发票已创建但本地写入失败时不自动重试（重试会再开一张发票），记 CRITICAL 日志交给人工对账。
"""
import logging
from decimal import Decimal
from typing import Optional, Tuple
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ReconciliationError,
    ValidationError,
)
from app.models.order import Order
from app.models.payment import InvoiceStatus, Payment
from app.models.user import User
from app.models.website import Website
from app.schemas.auth import Principal
from app.services.audit_service import flag_operator_attention
from app.services.order_service import OrderService, quantize_money, utcnow
from app.services.order_state_machine import OrderEvent, guard

logger = logging.getLogger(__name__)

INVOICE_NUMBER_MAX_LENGTH = 25


def split_amount(total: Decimal, fee_rate: Decimal) -> Tuple[Decimal, Decimal]:
    """
    拆分平台费与发布者所得：平台费四舍五入到分，发布者所得取差额，
    保证 platform_fee + publisher_amount == total。
    """
    total = quantize_money(total)
    platform_fee = quantize_money(total * fee_rate)
    return platform_fee, total - platform_fee


def generate_invoice_number(order_id: int) -> str:
    """INV-{订单号}-{8 位随机}，截断到 PayPal 上限 25 字符"""
    return f"INV-{order_id}-{uuid4().hex[:8].upper()}"[:INVOICE_NUMBER_MAX_LENGTH]


class InvoiceService:
    """发票服务类；processor 为支付服务客户端（PayPalClient 或测试替身）"""

    def __init__(self, db: AsyncSession, processor):
        self.db = db
        self.processor = processor
        self.orders = OrderService(db)

    async def _active_payment(self, order_id: int) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(
                Payment.order_id == order_id,
                Payment.invoice_status != InvoiceStatus.CANCELLED,
            )
        )
        return result.scalars().first()

    async def issue_invoice(self, principal: Principal, order_id: int) -> Tuple[Order, Optional[str]]:
        """
        接单并开票。返回 (订单, warning)，warning 非空表示发票已创建但邮件通知失败。
        外部调用失败时抛 ExternalServiceError，本地不写任何数据，订单保持 pending 可重试。
        """
        order = await self.orders.get_order_for(principal, order_id)
        transition, source = guard(principal, order, OrderEvent.ACCEPT)

        if await self._active_payment(order_id) is not None:
            raise AlreadyExistsError("An active invoice already exists for this order", order_id=order_id)

        buyer = (await self.db.execute(select(User).where(User.id == order.advertiser_id))).scalar_one_or_none()
        if buyer is None or not buyer.email:
            raise ValidationError("The advertiser has no billing email on file", order_id=order_id)
        website = (await self.db.execute(select(Website).where(Website.id == order.website_id))).scalar_one()

        platform_fee, publisher_amount = split_amount(order.total_amount, settings.platform_fee_rate)
        invoice_number = generate_invoice_number(order.id)

        created = await self.processor.create_invoice(
            invoice_number=invoice_number,
            order_id=order.id,
            order_title=order.title,
            website_name=website.name,
            amount=quantize_money(order.total_amount),
            buyer_email=buyer.email,
            buyer_name=buyer.full_name,
        )

        # 外部发票已存在，下面的任何失败都需要人工对账
        try:
            now = utcnow()
            self.db.add(Payment(
                order_id=order.id,
                external_invoice_id=created.invoice_id,
                invoice_number=invoice_number,
                invoice_status=InvoiceStatus.SENT,
                invoice_url=created.invoice_url,
                total_amount=quantize_money(order.total_amount),
                platform_fee=platform_fee,
                publisher_amount=publisher_amount,
                invoice_sent_at=now,
            ))
            moved = await self.orders.transition_order(order, transition, source)
            if not moved:
                await self.db.rollback()
            else:
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.critical(
                "发票已在 PayPal 创建但本地保存失败，需人工对账 order=%s invoice_id=%s number=%s: %s",
                order_id, created.invoice_id, invoice_number, e,
            )
            await flag_operator_attention(
                self.db, "order", order_id, "invoice created externally but not persisted",
                invoice_id=created.invoice_id, invoice_number=invoice_number,
            )
            raise ReconciliationError(order_id=order_id, invoice_id=created.invoice_id) from e

        if not moved:
            logger.critical(
                "发票已在 PayPal 创建但订单状态已被并发修改，需人工取消发票 order=%s invoice_id=%s",
                order_id, created.invoice_id,
            )
            await flag_operator_attention(
                self.db, "order", order_id, "invoice created externally for an order that changed state",
                invoice_id=created.invoice_id, invoice_number=invoice_number,
            )
            raise ConflictError(order_id=order_id, invoice_id=created.invoice_id)

        logger.info(
            "订单 %s 已接单并开票 invoice_id=%s total=%s fee=%s publisher=%s",
            order_id, created.invoice_id, order.total_amount, platform_fee, publisher_amount,
        )
        return await self.orders.get_order(order_id), created.warning
