"""
收款/打款相关Schema
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from app.models.payment import InvoiceStatus
from app.models.payout import PayoutStatus


class PaymentResponse(BaseModel):
    """发票（收款）响应"""
    id: int
    invoice_number: str
    invoice_status: InvoiceStatus
    invoice_url: Optional[str] = None
    total_amount: Decimal
    platform_fee: Decimal
    publisher_amount: Decimal
    invoice_sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PayoutResponse(BaseModel):
    """打款响应"""
    id: int
    amount: Decimal
    payout_status: PayoutStatus
    publisher_destination_address: str
    initiated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    class Config:
        from_attributes = True


# ---------- 支付服务返回值 ---------- #
class CreatedInvoice(BaseModel):
    """外部发票创建结果"""
    invoice_id: str
    invoice_url: str
    # 发票已创建但邮件通知失败
    warning: Optional[str] = None


class CreatedPayout(BaseModel):
    """外部打款创建结果；item_id 可能拿不到，webhook 再按 batch_id 兜底"""
    batch_id: str
    item_id: Optional[str] = None
    status: Optional[str] = None


class ExternalInvoiceState(BaseModel):
    """对账时查询到的发票状态"""
    invoice_id: str
    status: str
    transaction_id: Optional[str] = None


class ExternalPayoutItemState(BaseModel):
    """对账时查询到的打款条目状态"""
    item_id: str
    batch_id: Optional[str] = None
    transaction_status: str
    failure_reason: Optional[str] = None
