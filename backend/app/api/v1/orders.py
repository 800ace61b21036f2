"""
订单相关API：下单、查询、接单/拒单/交付/验收/返工/争议/打款
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_db
from app.core.exceptions import MarketplaceError, NotFoundError
from app.api.deps import get_client_ip, get_payment_processor
from app.api.v1.auth import get_current_principal
from app.models.order import OrderStatus
from app.schemas.auth import Principal
from app.schemas.order import (
    AcceptOrderResponse,
    ApproveOrderRequest,
    ApproveOrderResponse,
    DisputeRequest,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    RejectOrderRequest,
    RevisionRequest,
    SubmitWorkRequest,
)
from app.services import cache_service
from app.services.audit_service import log_audit
from app.services.invoice_service import InvoiceService
from app.services.order_service import OrderService
from app.services.payout_service import PayoutService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _invalidate(order_id: int) -> None:
    await asyncio.to_thread(cache_service.invalidate_order_cache, order_id)


async def _audit(db: AsyncSession, request: Request, principal: Principal, action: str, order_id: int, detail: Optional[dict] = None) -> None:
    await log_audit(db, principal.user_id, action, "order", str(order_id), detail, get_client_ip(request), getattr(request.state, "request_id", None))


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    order_data: OrderCreate,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """广告主下单"""
    order_service = OrderService(db)
    order = await order_service.create_order(principal, order_data)
    out = OrderResponse.model_validate(order)
    await _audit(db, request, principal, "create_order", order.id, {"website_id": order.website_id, "total": str(order.total_amount)})
    return out


@router.get("", response_model=OrderListResponse)
async def list_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status_filter: Optional[OrderStatus] = Query(None, alias="status", description="按订单状态筛选"),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """订单列表（只含自己参与的订单，管理员看全部）"""
    order_service = OrderService(db)
    orders, total = await order_service.list_orders(principal, status_filter, page, page_size)
    return OrderListResponse(
        items=[OrderResponse.model_validate(o) for o in orders],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """订单详情，带短时缓存"""
    cached = await asyncio.to_thread(cache_service.get_order_detail, order_id)
    if cached is not None:
        if principal.is_admin or principal.user_id in (cached.get("advertiser_id"), cached.get("publisher_id")):
            return OrderResponse(**cached)
        raise NotFoundError("Order not found", order_id=order_id)
    order_service = OrderService(db)
    order = await order_service.get_order_for(principal, order_id)
    out = OrderResponse.model_validate(order)
    await asyncio.to_thread(cache_service.set_order_detail, order_id, out.model_dump(mode="json"))
    return out


@router.post("/{order_id}/accept", response_model=AcceptOrderResponse)
async def accept_order(
    order_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    processor=Depends(get_payment_processor),
):
    """发布者接单：开具发票，订单进入 payment_pending"""
    invoice_service = InvoiceService(db, processor)
    try:
        order, warning = await invoice_service.issue_invoice(principal, order_id)
    finally:
        await _invalidate(order_id)
    out = AcceptOrderResponse(order=OrderResponse.model_validate(order), warning=warning)
    await _audit(db, request, principal, "accept_order", order_id, {"warning": warning} if warning else None)
    return out


@router.post("/{order_id}/reject", response_model=OrderResponse)
async def reject_order(
    order_id: int,
    request: Request,
    body: Optional[RejectOrderRequest] = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """发布者拒单"""
    reason = body.reason if body else None
    order = await OrderService(db).reject_order(principal, order_id, reason)
    await _invalidate(order_id)
    out = OrderResponse.model_validate(order)
    await _audit(db, request, principal, "reject_order", order_id, {"reason": reason} if reason else None)
    return out


@router.post("/{order_id}/submit-work", response_model=OrderResponse)
async def submit_work(
    order_id: int,
    body: SubmitWorkRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """发布者交付（返工后再次提交也走这里）"""
    order = await OrderService(db).submit_work(principal, order_id, body.published_url)
    await _invalidate(order_id)
    out = OrderResponse.model_validate(order)
    await _audit(db, request, principal, "submit_work", order_id, {"published_url": body.published_url})
    return out


@router.post("/{order_id}/approve", response_model=ApproveOrderResponse)
async def approve_order(
    order_id: int,
    request: Request,
    body: Optional[ApproveOrderRequest] = None,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    processor=Depends(get_payment_processor),
):
    """广告主验收，随后自动向发布者打款；打款失败不影响验收结果，可稍后重试"""
    order_service = OrderService(db)
    notes = body.notes if body else None
    try:
        order = await order_service.approve_order(principal, order_id, notes)
        await _audit(db, request, principal, "approve_order", order_id, {"notes": notes} if notes else None)
        payout_error = None
        try:
            order = await PayoutService(db, processor).issue_payout(principal, order_id)
        except MarketplaceError as e:
            payout_error = e.detail
            logger.warning("订单 %s 验收后自动打款未完成: %s", order_id, e.detail)
            order = await order_service.get_order(order_id)
    finally:
        await _invalidate(order_id)
    return ApproveOrderResponse(order=OrderResponse.model_validate(order), payout_error=payout_error)


@router.post("/{order_id}/request-revision", response_model=OrderResponse)
async def request_revision(
    order_id: int,
    body: RevisionRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """广告主要求返工"""
    order = await OrderService(db).request_revision(principal, order_id, body.notes)
    await _invalidate(order_id)
    out = OrderResponse.model_validate(order)
    await _audit(db, request, principal, "request_revision", order_id, {"notes": body.notes})
    return out


@router.post("/{order_id}/dispute", response_model=OrderResponse)
async def dispute_order(
    order_id: int,
    body: DisputeRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
):
    """任一当事方发起争议"""
    order = await OrderService(db).dispute_order(principal, order_id, body.reason)
    await _invalidate(order_id)
    out = OrderResponse.model_validate(order)
    await _audit(db, request, principal, "dispute_order", order_id, {"reason": body.reason})
    return out


@router.post("/{order_id}/payout", response_model=OrderResponse)
async def issue_payout(
    order_id: int,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    processor=Depends(get_payment_processor),
):
    """重新发起打款（上次打款失败后）"""
    try:
        order = await PayoutService(db, processor).issue_payout(principal, order_id)
    finally:
        await _invalidate(order_id)
    out = OrderResponse.model_validate(order)
    await _audit(db, request, principal, "issue_payout", order_id)
    return out
