"""
PayPal webhook 对账：发票已付 / 发票取消 / 打款成功 / 打款失败

每个处理函数对重放幂等：先看本地记录是否已是终态，再用带源状态条件的 UPDATE 推进，
0 行即说明别的投递已经处理过。找不到对应记录时返回 404 结果（不抛异常），让 PayPal 稍后重投。
对账任务（tasks/payment_tasks.py）查询到的外部状态也走同一套处理函数。
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ExternalServiceError
from app.models.order import OrderStatus
from app.models.payment import InvoiceStatus, Payment
from app.models.payout import Payout, PayoutStatus
from app.services.audit_service import flag_operator_attention, log_audit
from app.services.order_service import OrderService, utcnow
from app.services.order_state_machine import OrderEvent, can_apply, get_transition

logger = logging.getLogger(__name__)

INVOICE_PAID = "INVOICING.INVOICE.PAID"
INVOICE_CANCELLED = "INVOICING.INVOICE.CANCELLED"
PAYOUT_SUCCEEDED = "PAYMENT.PAYOUTS-ITEM.SUCCEEDED"
PAYOUT_FAILED_EVENTS = frozenset({
    "PAYMENT.PAYOUTS-ITEM.FAILED",
    "PAYMENT.PAYOUTS-ITEM.DENIED",
    "PAYMENT.PAYOUTS-ITEM.BLOCKED",
    "PAYMENT.PAYOUTS-ITEM.RETURNED",
})

# 对账任务：外部状态 -> 处理方式
INVOICE_PAID_STATES = frozenset({"PAID", "MARKED_AS_PAID"})
INVOICE_CANCELLED_STATES = frozenset({"CANCELLED"})
PAYOUT_SUCCESS_STATES = frozenset({"SUCCESS"})
PAYOUT_FAILED_STATES = frozenset({"FAILED", "DENIED", "BLOCKED", "RETURNED"})


@dataclass
class WebhookOutcome:
    """处理结果：HTTP 状态码 + 返回给 PayPal 的 JSON；order_id 用于失效订单缓存"""
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)
    order_id: Optional[int] = None

    @property
    def applied(self) -> bool:
        return self.status_code == 200 and self.body.get("status") == "processed"


def _ok(order_id: Optional[int] = None, **extra) -> WebhookOutcome:
    return WebhookOutcome(200, {"status": "processed", **extra}, order_id)


def _ignored(reason: str, order_id: Optional[int] = None) -> WebhookOutcome:
    return WebhookOutcome(200, {"status": "ignored", "reason": reason}, order_id)


def _not_found(what: str) -> WebhookOutcome:
    return WebhookOutcome(404, {"status": "not_found", "detail": f"{what} not found"})


def _bad_request(detail: str) -> WebhookOutcome:
    return WebhookOutcome(400, {"status": "error", "detail": detail})


# ---------- 事件字段提取 ---------- #
def extract_invoice_id(resource: Dict[str, Any]) -> Optional[str]:
    invoice = resource.get("invoice")
    if isinstance(invoice, dict) and invoice.get("id"):
        return invoice["id"]
    return resource.get("id")


def extract_transaction_id(resource: Dict[str, Any]) -> Optional[str]:
    invoice = resource.get("invoice") or {}
    transactions = (invoice.get("payments") or {}).get("transactions") or []
    if transactions and isinstance(transactions[0], dict):
        return transactions[0].get("payment_id")
    return None


def extract_failure_reason(resource: Dict[str, Any]) -> Optional[str]:
    errors = resource.get("errors")
    if isinstance(errors, list):
        errors = errors[0] if errors else None
    if isinstance(errors, dict):
        return errors.get("message") or errors.get("name")
    return None


class WebhookService:
    """webhook 对账服务类"""

    def __init__(self, db: AsyncSession, processor):
        self.db = db
        self.processor = processor
        self.orders = OrderService(db)

    async def verify(self, headers: Mapping[str, str], event: Dict[str, Any]) -> bool:
        """签名校验委托给 PayPal；PayPal 不可达时抛 ExternalServiceError"""
        if not settings.WEBHOOK_VERIFY_ENABLED:
            logger.warning("WEBHOOK_VERIFY_ENABLED=false，跳过 webhook 签名校验")
            return True
        return await self.processor.verify_webhook_signature(headers, event)

    async def dispatch(self, event: Dict[str, Any]) -> WebhookOutcome:
        """按 event_type 分发"""
        event_type = event.get("event_type")
        resource = event.get("resource")
        if not isinstance(resource, dict):
            resource = {}
        logger.info("收到 PayPal webhook id=%s type=%s", event.get("id"), event_type)

        if event_type in (INVOICE_PAID, INVOICE_CANCELLED):
            invoice_id = extract_invoice_id(resource)
            if not invoice_id:
                return _bad_request("invoice id missing")
            if event_type == INVOICE_PAID:
                return await self.apply_invoice_paid(invoice_id, extract_transaction_id(resource))
            return await self.apply_invoice_cancelled(invoice_id)

        if event_type == PAYOUT_SUCCEEDED or event_type in PAYOUT_FAILED_EVENTS:
            item_id = resource.get("payout_item_id")
            batch_id = resource.get("payout_batch_id")
            if not item_id and not batch_id:
                return _bad_request("payout item id missing")
            if event_type == PAYOUT_SUCCEEDED:
                return await self.apply_payout_succeeded(item_id, batch_id)
            reason = extract_failure_reason(resource) or event_type.rsplit(".", 1)[-1]
            return await self.apply_payout_failed(item_id, batch_id, reason)

        # UNCLAIMED 等其他事件：确认收到，不处理
        logger.info("忽略 webhook 事件 type=%s", event_type)
        return _ignored(f"unhandled event type {event_type}")

    # ==========================================================
    # 发票
    # ==========================================================
    async def _payment_by_invoice(self, invoice_id: str) -> Optional[Payment]:
        result = await self.db.execute(select(Payment).where(Payment.external_invoice_id == invoice_id))
        return result.scalar_one_or_none()

    async def apply_invoice_paid(self, invoice_id: str, transaction_id: Optional[str] = None) -> WebhookOutcome:
        """SENT -> PAID，订单 payment_pending -> in_progress，步骤 2 开始"""
        payment = await self._payment_by_invoice(invoice_id)
        if payment is None:
            logger.warning("发票已付事件找不到本地记录 invoice_id=%s", invoice_id)
            return _not_found("payment")
        payment_id, order_id = payment.id, payment.order_id
        if payment.invoice_status == InvoiceStatus.PAID:
            return _ignored("already paid", order_id)
        if payment.invoice_status == InvoiceStatus.CANCELLED:
            await flag_operator_attention(
                self.db, "payment", payment_id, "paid event received for a cancelled invoice",
                invoice_id=invoice_id, transaction_id=transaction_id,
            )
            return _ignored("invoice cancelled", order_id)

        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.invoice_status == InvoiceStatus.SENT)
            .values(invoice_status=InvoiceStatus.PAID, paid_at=utcnow(), external_transaction_id=transaction_id)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            return _ignored("already processed", order_id)

        order = await self.orders.get_order(order_id)
        moved = False
        if can_apply(order.status, OrderEvent.INVOICE_PAID):
            moved = await self.orders.transition_order(
                order, get_transition(OrderEvent.INVOICE_PAID), OrderStatus.PAYMENT_PENDING,
            )
        status_after = order.status
        await log_audit(
            self.db, None, "invoice_paid", "payment", payment_id,
            {"invoice_id": invoice_id, "transaction_id": transaction_id, "order_id": order_id},
            commit=False,
        )
        await self.db.commit()
        logger.info("发票已付 invoice_id=%s order=%s", invoice_id, order_id)

        if not moved:
            await flag_operator_attention(
                self.db, "order", order_id, "funds received for an order that cannot advance",
                invoice_id=invoice_id, order_status=OrderStatus(status_after).value,
            )
        return _ok(order_id)

    async def apply_invoice_cancelled(self, invoice_id: str) -> WebhookOutcome:
        """SENT -> CANCELLED，订单 payment_pending -> pending，可以重新接单开票"""
        payment = await self._payment_by_invoice(invoice_id)
        if payment is None:
            logger.warning("发票取消事件找不到本地记录 invoice_id=%s", invoice_id)
            return _not_found("payment")
        payment_id, order_id = payment.id, payment.order_id
        if payment.invoice_status == InvoiceStatus.CANCELLED:
            return _ignored("already cancelled", order_id)
        if payment.invoice_status == InvoiceStatus.PAID:
            await flag_operator_attention(
                self.db, "payment", payment_id, "cancel event received for a paid invoice",
                invoice_id=invoice_id,
            )
            return _ignored("invoice already paid", order_id)

        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.invoice_status == InvoiceStatus.SENT)
            .values(invoice_status=InvoiceStatus.CANCELLED, cancelled_at=utcnow())
        )
        if result.rowcount == 0:
            await self.db.rollback()
            return _ignored("already processed", order_id)

        order = await self.orders.get_order(order_id)
        if can_apply(order.status, OrderEvent.INVOICE_CANCELLED):
            await self.orders.transition_order(
                order, get_transition(OrderEvent.INVOICE_CANCELLED), OrderStatus.PAYMENT_PENDING,
            )
        await log_audit(
            self.db, None, "invoice_cancelled", "payment", payment_id,
            {"invoice_id": invoice_id, "order_id": order_id},
            commit=False,
        )
        await self.db.commit()
        logger.info("发票已取消 invoice_id=%s order=%s", invoice_id, order_id)
        return _ok(order_id)

    # ==========================================================
    # 打款
    # ==========================================================
    async def _find_payout(self, item_id: Optional[str], batch_id: Optional[str]) -> Optional[Payout]:
        """先按 item id 找；创建时没拿到 item id 的，按 batch id 兜底"""
        if item_id:
            result = await self.db.execute(select(Payout).where(Payout.external_item_id == item_id))
            payout = result.scalars().first()
            if payout is not None:
                return payout
        if batch_id:
            result = await self.db.execute(
                select(Payout)
                .where(Payout.external_batch_id == batch_id)
                .where(or_(Payout.external_item_id.is_(None), Payout.external_item_id == item_id))
                .order_by(Payout.id.desc())
            )
            return result.scalars().first()
        return None

    async def apply_payout_succeeded(self, item_id: Optional[str], batch_id: Optional[str] = None) -> WebhookOutcome:
        """PROCESSING -> SUCCESS，订单 payment_processing -> paid"""
        payout = await self._find_payout(item_id, batch_id)
        if payout is None:
            logger.warning("打款成功事件找不到本地记录 item=%s batch=%s", item_id, batch_id)
            return _not_found("payout")
        payout_id, order_id = payout.id, payout.order_id
        if payout.payout_status == PayoutStatus.SUCCESS:
            return _ignored("already succeeded", order_id)
        if payout.payout_status == PayoutStatus.FAILED:
            # 终态不回退
            logger.critical("打款已记为失败后又收到成功事件 payout=%s item=%s batch=%s", payout_id, item_id, batch_id)
            await flag_operator_attention(
                self.db, "payout", payout_id, "success reported for a payout already marked failed",
                item_id=item_id, batch_id=batch_id,
            )
            return _ignored("payout already failed", order_id)

        values: Dict[str, Any] = {"payout_status": PayoutStatus.SUCCESS, "completed_at": utcnow()}
        if item_id and not payout.external_item_id:
            values["external_item_id"] = item_id
        result = await self.db.execute(
            update(Payout)
            .where(Payout.id == payout_id, Payout.payout_status == PayoutStatus.PROCESSING)
            .values(**values)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            return _ignored("already processed", order_id)

        order = await self.orders.get_order(order_id)
        moved = False
        if can_apply(order.status, OrderEvent.PAYOUT_SUCCEEDED):
            moved = await self.orders.transition_order(
                order, get_transition(OrderEvent.PAYOUT_SUCCEEDED), OrderStatus.PAYMENT_PROCESSING,
            )
        status_after = order.status
        await log_audit(
            self.db, None, "payout_succeeded", "payout", payout_id,
            {"item_id": item_id, "batch_id": batch_id, "order_id": order_id},
            commit=False,
        )
        await self.db.commit()
        logger.info("打款成功 payout=%s order=%s", payout_id, order_id)

        if not moved:
            await flag_operator_attention(
                self.db, "order", order_id, "payout succeeded for an order that cannot advance",
                payout_id=payout_id, order_status=OrderStatus(status_after).value,
            )
        return _ok(order_id)

    async def apply_payout_failed(
        self,
        item_id: Optional[str],
        batch_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> WebhookOutcome:
        """PROCESSING -> FAILED，订单 payment_processing -> completed，等待重新发起打款"""
        payout = await self._find_payout(item_id, batch_id)
        if payout is None:
            logger.warning("打款失败事件找不到本地记录 item=%s batch=%s", item_id, batch_id)
            return _not_found("payout")
        payout_id, order_id = payout.id, payout.order_id
        if payout.payout_status == PayoutStatus.FAILED:
            return _ignored("already failed", order_id)
        if payout.payout_status == PayoutStatus.SUCCESS:
            # 终态不回退
            logger.critical("打款已成功后又收到失败事件 payout=%s item=%s reason=%s", payout_id, item_id, reason)
            await flag_operator_attention(
                self.db, "payout", payout_id, "failure reported for a payout already marked successful",
                item_id=item_id, batch_id=batch_id, failure_reason=reason,
            )
            return _ignored("payout already succeeded", order_id)

        reason = reason or "Payout failed"
        values: Dict[str, Any] = {
            "payout_status": PayoutStatus.FAILED,
            "failure_reason": reason,
            "completed_at": utcnow(),
        }
        if item_id and not payout.external_item_id:
            values["external_item_id"] = item_id
        result = await self.db.execute(
            update(Payout)
            .where(Payout.id == payout_id, Payout.payout_status == PayoutStatus.PROCESSING)
            .values(**values)
        )
        if result.rowcount == 0:
            await self.db.rollback()
            return _ignored("already processed", order_id)

        order = await self.orders.get_order(order_id)
        if can_apply(order.status, OrderEvent.PAYOUT_FAILED):
            await self.orders.transition_order(
                order, get_transition(OrderEvent.PAYOUT_FAILED), OrderStatus.PAYMENT_PROCESSING,
            )
        await log_audit(
            self.db, None, "payout_failed", "payout", payout_id,
            {"item_id": item_id, "batch_id": batch_id, "order_id": order_id, "reason": reason},
            commit=False,
        )
        await self.db.commit()
        logger.error("打款失败 payout=%s order=%s reason=%s", payout_id, order_id, reason)
        await flag_operator_attention(
            self.db, "payout", payout_id, "payout failed, retry required",
            order_id=order_id, failure_reason=reason,
        )
        return _ok(order_id)

    # ==========================================================
    # 对账：补偿丢失的 webhook
    # ==========================================================
    async def reconcile_stale(self, older_than: datetime) -> Dict[str, int]:
        """
        查询 older_than 之前发出、仍为 SENT 的发票和仍为 PROCESSING 的打款，
        向 PayPal 拉取当前状态，有结果的按 webhook 同一路径处理。不会创建任何外部资源。
        """
        stats = {"checked": 0, "applied": 0, "errors": 0}

        result = await self.db.execute(
            select(Payment.external_invoice_id)
            .where(Payment.invoice_status == InvoiceStatus.SENT, Payment.invoice_sent_at < older_than)
            .order_by(Payment.id)
        )
        for invoice_id in result.scalars().all():
            stats["checked"] += 1
            try:
                state = await self.processor.get_invoice(invoice_id)
            except ExternalServiceError as e:
                stats["errors"] += 1
                logger.warning("对账查询发票失败 invoice_id=%s: %s", invoice_id, e.context)
                continue
            outcome = None
            if state.status in INVOICE_PAID_STATES:
                outcome = await self.apply_invoice_paid(invoice_id, state.transaction_id)
            elif state.status in INVOICE_CANCELLED_STATES:
                outcome = await self.apply_invoice_cancelled(invoice_id)
            if outcome is not None and outcome.applied:
                stats["applied"] += 1

        result = await self.db.execute(
            select(Payout.id, Payout.external_item_id, Payout.external_batch_id)
            .where(
                Payout.payout_status == PayoutStatus.PROCESSING,
                Payout.initiated_at < older_than,
            )
            .order_by(Payout.id)
        )
        for payout_id, item_id, batch_id in result.all():
            stats["checked"] += 1
            try:
                if item_id:
                    state = await self.processor.get_payout_item(item_id)
                elif batch_id:
                    # 创建时没拿到 item id，按 batch 查
                    state = await self.processor.get_payout_batch(batch_id)
                else:
                    state = None
            except ExternalServiceError as e:
                stats["errors"] += 1
                logger.warning("对账查询打款失败 payout=%s item=%s batch=%s: %s", payout_id, item_id, batch_id, e.context)
                continue
            if state is None:
                logger.info("打款 %s 在 PayPal 还没有条目状态 batch=%s", payout_id, batch_id)
                continue
            item_id = state.item_id
            outcome = None
            if state.transaction_status in PAYOUT_SUCCESS_STATES:
                outcome = await self.apply_payout_succeeded(item_id, batch_id)
            elif state.transaction_status in PAYOUT_FAILED_STATES:
                outcome = await self.apply_payout_failed(
                    item_id, batch_id, state.failure_reason or state.transaction_status,
                )
            if outcome is not None and outcome.applied:
                stats["applied"] += 1

        logger.info("对账完成 %s", stats)
        return stats
