import json
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.core.exceptions import (
    AlreadyExistsError,
    AuthorizationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ReconciliationError,
)
from app.models.audit_log import AuditLog
from app.models.order import OrderStatus, PaymentStatusTag
from app.models.order_step import StepStatus
from app.models.payment import InvoiceStatus, Payment
from app.services.audit_service import OPERATOR_ATTENTION
from app.services.invoice_service import InvoiceService, generate_invoice_number, split_amount
from app.services.order_service import OrderService

from conftest import accept_order, place_order


async def _payments(session_factory, order_id):
    async with session_factory() as session:
        result = await session.execute(select(Payment).where(Payment.order_id == order_id))
        return result.scalars().all()


def test_split_amount_rounds_half_up():
    fee, publisher = split_amount(Decimal("157.50"), Decimal("0.15"))
    assert fee == Decimal("23.63")
    assert publisher == Decimal("133.87")


@pytest.mark.parametrize("total", ["0.01", "0.05", "10.10", "99.99", "157.50", "1234.57", "99999.99"])
def test_split_amount_always_sums_to_total(total):
    fee, publisher = split_amount(Decimal(total), Decimal("0.15"))
    assert fee + publisher == Decimal(total)
    assert fee.as_tuple().exponent == -2
    assert publisher.as_tuple().exponent == -2


def test_invoice_number_is_bounded_and_unique():
    assert len(generate_invoice_number(123456789012345)) == 25
    numbers = {generate_invoice_number(7) for _ in range(50)}
    assert len(numbers) == 50
    assert all(n.startswith("INV-7-") and len(n) == 14 for n in numbers)


async def test_accept_issues_invoice(session_factory, seed, processor):
    order_id = await place_order(session_factory, seed)

    order = await accept_order(session_factory, seed, processor, order_id)

    assert order.status == OrderStatus.PAYMENT_PENDING
    assert order.payment_status == PaymentStatusTag.PENDING
    assert order.steps[0].status == StepStatus.COMPLETED
    payments = await _payments(session_factory, order_id)
    assert len(payments) == 1
    payment = payments[0]
    assert payment.invoice_status == InvoiceStatus.SENT
    assert payment.total_amount == Decimal("157.50")
    assert payment.platform_fee == Decimal("23.63")
    assert payment.publisher_amount == Decimal("133.87")
    assert payment.platform_fee + payment.publisher_amount == payment.total_amount
    assert payment.invoice_sent_at is not None
    assert order.active_payment.id == payment.id

    call = processor.invoices[0]
    assert call["buyer_email"] == "buyer@example.com"
    assert call["amount"] == Decimal("157.50")
    assert call["website_name"] == "Tech Weekly"


async def test_accept_surfaces_send_warning(session_factory, seed, processor):
    processor.send_warning = "Invoice created but email notification failed."
    order_id = await place_order(session_factory, seed)

    async with session_factory() as session:
        order, warning = await InvoiceService(session, processor).issue_invoice(seed.publisher_principal, order_id)

    assert warning == "Invoice created but email notification failed."
    assert order.status == OrderStatus.PAYMENT_PENDING
    assert len(await _payments(session_factory, order_id)) == 1


async def test_accept_on_non_pending_order_creates_no_payment(session_factory, seed, processor):
    order_id = await place_order(session_factory, seed)
    await accept_order(session_factory, seed, processor, order_id)

    with pytest.raises(ConflictError):
        await accept_order(session_factory, seed, processor, order_id)

    assert len(processor.invoices) == 1
    assert len(await _payments(session_factory, order_id)) == 1


async def test_accept_on_rejected_order_creates_no_payment(session_factory, seed, processor):
    order_id = await place_order(session_factory, seed)
    async with session_factory() as session:
        await OrderService(session).reject_order(seed.publisher_principal, order_id, "Off topic")

    with pytest.raises(ConflictError):
        await accept_order(session_factory, seed, processor, order_id)

    assert processor.invoices == []
    assert await _payments(session_factory, order_id) == []


async def test_only_the_publisher_can_accept(session_factory, seed, processor):
    order_id = await place_order(session_factory, seed)

    async with session_factory() as session:
        service = InvoiceService(session, processor)
        with pytest.raises(AuthorizationError):
            await service.issue_invoice(seed.advertiser_principal, order_id)
        with pytest.raises(NotFoundError):
            await service.issue_invoice(seed.other_publisher_principal, order_id)

    assert processor.invoices == []


async def test_external_failure_leaves_order_pending(session_factory, seed, processor):
    processor.fail_invoice = True
    order_id = await place_order(session_factory, seed)

    with pytest.raises(ExternalServiceError):
        await accept_order(session_factory, seed, processor, order_id)

    async with session_factory() as session:
        order = await OrderService(session).get_order(order_id)
    assert order.status == OrderStatus.PENDING
    assert order.steps[0].status == StepStatus.IN_PROGRESS
    assert await _payments(session_factory, order_id) == []

    # 可重试
    processor.fail_invoice = False
    order = await accept_order(session_factory, seed, processor, order_id)
    assert order.status == OrderStatus.PAYMENT_PENDING


async def test_existing_active_invoice_blocks_new_one(session_factory, seed, processor):
    order_id = await place_order(session_factory, seed)
    async with session_factory() as session:
        session.add(Payment(
            order_id=order_id,
            external_invoice_id="INV2-MANUAL",
            invoice_number="INV-MANUAL",
            invoice_status=InvoiceStatus.SENT,
            total_amount=Decimal("157.50"),
            platform_fee=Decimal("23.63"),
            publisher_amount=Decimal("133.87"),
        ))
        await session.commit()

    with pytest.raises(AlreadyExistsError):
        await accept_order(session_factory, seed, processor, order_id)
    assert processor.invoices == []


async def test_local_persist_failure_is_reported_for_reconciliation(session_factory, seed, processor):
    order_id = await place_order(session_factory, seed)

    async with session_factory() as session:
        async def broken_commit():
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        session.commit = broken_commit
        with pytest.raises(ReconciliationError):
            await InvoiceService(session, processor).issue_invoice(seed.publisher_principal, order_id)

    # 外部发票已创建，本地没有记录，订单仍为 pending
    assert len(processor.invoices) == 1
    assert await _payments(session_factory, order_id) == []
    async with session_factory() as session:
        order = await OrderService(session).get_order(order_id)
        assert order.status == OrderStatus.PENDING
        flags = (await session.execute(select(AuditLog).where(AuditLog.action == OPERATOR_ATTENTION))).scalars().all()
    # 审计写入同样失败时只记日志，不影响 ReconciliationError 的抛出
    assert flags == []


async def test_order_disputed_while_invoice_created(session_factory, seed, processor):
    order_id = await place_order(session_factory, seed)

    async def dispute_meanwhile():
        async with session_factory() as other:
            await OrderService(other).dispute_order(seed.advertiser_principal, order_id, "Changed my mind")

    processor.after_create_invoice = dispute_meanwhile

    with pytest.raises(ConflictError):
        await accept_order(session_factory, seed, processor, order_id)

    # 外部发票已创建，但订单已进入争议：本地不记发票，标记人工取消
    assert len(processor.invoices) == 1
    assert await _payments(session_factory, order_id) == []
    async with session_factory() as session:
        order = await OrderService(session).get_order(order_id)
        assert order.status == OrderStatus.DISPUTED
        assert order.payment_status == PaymentStatusTag.NONE
        flags = (await session.execute(select(AuditLog).where(AuditLog.action == OPERATOR_ATTENTION))).scalars().all()
    assert len(flags) == 1
    assert flags[0].resource_type == "order"
    assert flags[0].resource_id == str(order_id)
    assert json.loads(flags[0].detail)["invoice_id"] == "INV2-TEST-0001"
