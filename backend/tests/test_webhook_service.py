from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from app.models.audit_log import AuditLog
from app.models.order import OrderStatus, PaymentStatusTag
from app.models.order_step import StepStatus
from app.models.payment import InvoiceStatus, Payment
from app.models.payout import Payout, PayoutStatus
from app.services.audit_service import OPERATOR_ATTENTION
from app.services.order_service import OrderService
from app.services.webhook_service import WebhookService

from conftest import (
    accept_order,
    invoice_paid,
    issue_payout,
    order_completed,
    place_order,
)


async def _order(session_factory, order_id):
    async with session_factory() as session:
        return await OrderService(session).get_order(order_id)


async def _payment(session_factory, order_id):
    async with session_factory() as session:
        result = await session.execute(select(Payment).where(Payment.order_id == order_id).order_by(Payment.id))
        return result.scalars().all()[-1]


async def _payouts(session_factory, order_id):
    async with session_factory() as session:
        result = await session.execute(select(Payout).where(Payout.order_id == order_id).order_by(Payout.id))
        return result.scalars().all()


async def _flags(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(AuditLog).where(AuditLog.action == OPERATOR_ATTENTION))
        return result.scalars().all()


async def _dispatch(session_factory, processor, event):
    async with session_factory() as session:
        return await WebhookService(session, processor).dispatch(event)


def _invoice_event(event_type, invoice_id, transaction_id="TX-1"):
    return {
        "id": "WH-1",
        "event_type": event_type,
        "resource": {
            "invoice": {
                "id": invoice_id,
                "payments": {"transactions": [{"payment_id": transaction_id}]},
            }
        },
    }


def _payout_event(event_type, item_id=None, batch_id=None, errors=None):
    resource = {"payout_item_id": item_id, "payout_batch_id": batch_id}
    if errors is not None:
        resource["errors"] = errors
    return {"id": "WH-2", "event_type": event_type, "resource": resource}


async def _processing_order(session_factory, seed, processor):
    order_id = await order_completed(session_factory, seed, processor)
    await issue_payout(session_factory, seed, processor, order_id)
    return order_id


async def test_invoice_paid_advances_order(session_factory, seed, processor):
    order_id = await place_order(session_factory, seed)
    await accept_order(session_factory, seed, processor, order_id)
    invoice_id = processor.invoices[-1]["invoice_id"]

    outcome = await _dispatch(session_factory, processor, _invoice_event("INVOICING.INVOICE.PAID", invoice_id, "TX-42"))

    assert outcome.status_code == 200
    assert outcome.body["status"] == "processed"
    assert outcome.order_id == order_id
    order = await _order(session_factory, order_id)
    assert order.status == OrderStatus.IN_PROGRESS
    assert order.payment_status == PaymentStatusTag.PAID
    assert [s.status for s in order.steps] == [StepStatus.COMPLETED, StepStatus.IN_PROGRESS, StepStatus.PENDING]
    payment = await _payment(session_factory, order_id)
    assert payment.invoice_status == InvoiceStatus.PAID
    assert payment.external_transaction_id == "TX-42"
    assert payment.paid_at is not None


async def test_invoice_paid_replay_is_a_no_op(session_factory, seed, processor):
    order_id = await place_order(session_factory, seed)
    await accept_order(session_factory, seed, processor, order_id)
    await invoice_paid(session_factory, processor)
    first = await _payment(session_factory, order_id)
    steps_before = [(s.status, s.started_at) for s in (await _order(session_factory, order_id)).steps]

    outcome = await invoice_paid(session_factory, processor, transaction_id="TX-OTHER")

    assert outcome.status_code == 200
    assert outcome.body["status"] == "ignored"
    replayed = await _payment(session_factory, order_id)
    assert replayed.paid_at == first.paid_at
    assert replayed.external_transaction_id == "TX-1"
    order = await _order(session_factory, order_id)
    assert order.status == OrderStatus.IN_PROGRESS
    assert [(s.status, s.started_at) for s in order.steps] == steps_before


async def test_invoice_paid_for_unknown_invoice_is_not_found(session_factory, seed, processor):
    outcome = await _dispatch(session_factory, processor, _invoice_event("INVOICING.INVOICE.PAID", "INV2-NOPE"))
    assert outcome.status_code == 404
    assert outcome.body["status"] == "not_found"


async def test_invoice_paid_reads_top_level_resource_id(session_factory, seed, processor):
    order_id = await place_order(session_factory, seed)
    await accept_order(session_factory, seed, processor, order_id)
    invoice_id = processor.invoices[-1]["invoice_id"]

    event = {"event_type": "INVOICING.INVOICE.PAID", "resource": {"id": invoice_id}}
    outcome = await _dispatch(session_factory, processor, event)

    assert outcome.status_code == 200
    assert (await _order(session_factory, order_id)).status == OrderStatus.IN_PROGRESS


async def test_invoice_paid_for_disputed_order_is_flagged(session_factory, seed, processor):
    order_id = await place_order(session_factory, seed)
    await accept_order(session_factory, seed, processor, order_id)
    async with session_factory() as session:
        await OrderService(session).dispute_order(seed.advertiser_principal, order_id, "Changed my mind")

    outcome = await invoice_paid(session_factory, processor)

    assert outcome.status_code == 200
    assert (await _payment(session_factory, order_id)).invoice_status == InvoiceStatus.PAID
    assert (await _order(session_factory, order_id)).status == OrderStatus.DISPUTED
    flags = await _flags(session_factory)
    assert len(flags) == 1
    assert flags[0].resource_id == str(order_id)
    assert flags[0].user_id is None


async def test_invoice_cancelled_allows_new_invoice(session_factory, seed, processor):
    order_id = await place_order(session_factory, seed)
    await accept_order(session_factory, seed, processor, order_id)
    invoice_id = processor.invoices[-1]["invoice_id"]

    outcome = await _dispatch(session_factory, processor, _invoice_event("INVOICING.INVOICE.CANCELLED", invoice_id))

    assert outcome.status_code == 200
    order = await _order(session_factory, order_id)
    assert order.status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatusTag.NONE
    assert order.active_payment is None
    cancelled = await _payment(session_factory, order_id)
    assert cancelled.invoice_status == InvoiceStatus.CANCELLED
    assert cancelled.cancelled_at is not None

    order = await accept_order(session_factory, seed, processor, order_id)
    assert order.status == OrderStatus.PAYMENT_PENDING
    assert order.active_payment.external_invoice_id == processor.invoices[-1]["invoice_id"]
    assert len(order.payments) == 2


async def test_payout_succeeded_marks_order_paid(session_factory, seed, processor):
    order_id = await _processing_order(session_factory, seed, processor)

    outcome = await _dispatch(
        session_factory, processor, _payout_event("PAYMENT.PAYOUTS-ITEM.SUCCEEDED", "ITEM-1", "BATCH-1"),
    )

    assert outcome.status_code == 200
    order = await _order(session_factory, order_id)
    assert order.status == OrderStatus.PAID
    assert order.payment_status == PaymentStatusTag.PAID
    payout = (await _payouts(session_factory, order_id))[0]
    assert payout.payout_status == PayoutStatus.SUCCESS
    assert payout.completed_at is not None


async def test_payout_lookup_falls_back_to_batch_id(session_factory, seed, processor):
    processor.return_item_id = False
    order_id = await _processing_order(session_factory, seed, processor)

    outcome = await _dispatch(
        session_factory, processor, _payout_event("PAYMENT.PAYOUTS-ITEM.SUCCEEDED", "ITEM-LATE", "BATCH-1"),
    )

    assert outcome.status_code == 200
    payout = (await _payouts(session_factory, order_id))[0]
    assert payout.payout_status == PayoutStatus.SUCCESS
    assert payout.external_item_id == "ITEM-LATE"


async def test_payout_failed_reverts_to_completed_and_allows_retry(session_factory, seed, processor):
    order_id = await _processing_order(session_factory, seed, processor)

    outcome = await _dispatch(
        session_factory,
        processor,
        _payout_event("PAYMENT.PAYOUTS-ITEM.FAILED", "ITEM-1", "BATCH-1", errors={"message": "Receiver is unregistered"}),
    )

    assert outcome.status_code == 200
    order = await _order(session_factory, order_id)
    assert order.status == OrderStatus.COMPLETED
    assert order.payment_status == PaymentStatusTag.FAILED
    payout = (await _payouts(session_factory, order_id))[0]
    assert payout.payout_status == PayoutStatus.FAILED
    assert payout.failure_reason == "Receiver is unregistered"
    flags = await _flags(session_factory)
    assert [f.resource_type for f in flags] == ["payout"]

    order = await issue_payout(session_factory, seed, processor, order_id)
    assert order.status == OrderStatus.PAYMENT_PROCESSING
    assert len(await _payouts(session_factory, order_id)) == 2


async def test_denied_payout_is_treated_as_failed(session_factory, seed, processor):
    order_id = await _processing_order(session_factory, seed, processor)

    outcome = await _dispatch(
        session_factory,
        processor,
        _payout_event("PAYMENT.PAYOUTS-ITEM.DENIED", "ITEM-1", errors=[{"message": "Denied by risk review"}]),
    )

    assert outcome.status_code == 200
    payout = (await _payouts(session_factory, order_id))[0]
    assert payout.payout_status == PayoutStatus.FAILED
    assert payout.failure_reason == "Denied by risk review"


async def test_failure_after_success_does_not_regress(session_factory, seed, processor):
    order_id = await _processing_order(session_factory, seed, processor)
    await _dispatch(session_factory, processor, _payout_event("PAYMENT.PAYOUTS-ITEM.SUCCEEDED", "ITEM-1"))

    outcome = await _dispatch(session_factory, processor, _payout_event("PAYMENT.PAYOUTS-ITEM.FAILED", "ITEM-1"))

    assert outcome.status_code == 200
    assert outcome.body["status"] == "ignored"
    payout = (await _payouts(session_factory, order_id))[0]
    assert payout.payout_status == PayoutStatus.SUCCESS
    assert payout.failure_reason is None
    assert (await _order(session_factory, order_id)).status == OrderStatus.PAID
    assert len(await _flags(session_factory)) == 1


async def test_success_replay_is_a_no_op(session_factory, seed, processor):
    order_id = await _processing_order(session_factory, seed, processor)
    event = _payout_event("PAYMENT.PAYOUTS-ITEM.SUCCEEDED", "ITEM-1")
    await _dispatch(session_factory, processor, event)
    first = (await _payouts(session_factory, order_id))[0]

    outcome = await _dispatch(session_factory, processor, event)

    assert outcome.body["status"] == "ignored"
    assert (await _payouts(session_factory, order_id))[0].completed_at == first.completed_at


async def test_unknown_payout_is_not_found(session_factory, seed, processor):
    outcome = await _dispatch(session_factory, processor, _payout_event("PAYMENT.PAYOUTS-ITEM.SUCCEEDED", "ITEM-X", "BATCH-X"))
    assert outcome.status_code == 404


async def test_unclaimed_and_unknown_events_are_acknowledged(session_factory, seed, processor):
    for event_type in ("PAYMENT.PAYOUTS-ITEM.UNCLAIMED", "CUSTOMER.DISPUTE.CREATED"):
        outcome = await _dispatch(session_factory, processor, {"event_type": event_type, "resource": {}})
        assert outcome.status_code == 200
        assert outcome.body["status"] == "ignored"


async def test_event_without_identifiers_is_rejected(session_factory, seed, processor):
    outcome = await _dispatch(session_factory, processor, {"event_type": "INVOICING.INVOICE.PAID", "resource": {}})
    assert outcome.status_code == 400


async def test_reconcile_stale_applies_lost_webhooks(session_factory, seed, processor):
    paid_order = await place_order(session_factory, seed)
    await accept_order(session_factory, seed, processor, paid_order)
    processor.invoice_states[processor.invoices[-1]["invoice_id"]] = "PAID"

    waiting_order = await place_order(session_factory, seed)
    await accept_order(session_factory, seed, processor, waiting_order)

    payout_order = await _processing_order(session_factory, seed, processor)
    processor.payout_states[processor.payouts[-1]["item_id"]] = "FAILED"

    async with session_factory() as session:
        stats = await WebhookService(session, processor).reconcile_stale(
            datetime.now(timezone.utc) + timedelta(minutes=1)
        )

    assert stats["applied"] == 2
    assert stats["errors"] == 0
    assert (await _order(session_factory, paid_order)).status == OrderStatus.IN_PROGRESS
    assert (await _payment(session_factory, paid_order)).external_transaction_id == "TX-RECONCILED"
    assert (await _order(session_factory, waiting_order)).status == OrderStatus.PAYMENT_PENDING
    assert (await _order(session_factory, payout_order)).status == OrderStatus.COMPLETED
    payout = (await _payouts(session_factory, payout_order))[0]
    assert payout.failure_reason == "Receiver account is locked"


async def test_reconcile_stale_queries_batch_when_item_id_missing(session_factory, seed, processor):
    processor.return_item_id = False
    order_id = await _processing_order(session_factory, seed, processor)
    assert (await _payouts(session_factory, order_id))[0].external_item_id is None
    processor.payout_states["ITEM-1"] = "SUCCESS"

    async with session_factory() as session:
        stats = await WebhookService(session, processor).reconcile_stale(
            datetime.now(timezone.utc) + timedelta(minutes=1)
        )

    assert stats == {"checked": 1, "applied": 1, "errors": 0}
    assert (await _order(session_factory, order_id)).status == OrderStatus.PAID
    payout = (await _payouts(session_factory, order_id))[0]
    assert payout.payout_status == PayoutStatus.SUCCESS
    assert payout.external_batch_id == "BATCH-1"
    assert payout.external_item_id == "ITEM-1"


async def test_reconcile_stale_leaves_batch_without_items(session_factory, seed, processor):
    processor.return_item_id = False
    order_id = await _processing_order(session_factory, seed, processor)

    async def empty_batch(batch_id):
        return None

    processor.get_payout_batch = empty_batch

    async with session_factory() as session:
        stats = await WebhookService(session, processor).reconcile_stale(
            datetime.now(timezone.utc) + timedelta(minutes=1)
        )

    assert stats == {"checked": 1, "applied": 0, "errors": 0}
    assert (await _order(session_factory, order_id)).status == OrderStatus.PAYMENT_PROCESSING
    assert (await _payouts(session_factory, order_id))[0].payout_status == PayoutStatus.PROCESSING
