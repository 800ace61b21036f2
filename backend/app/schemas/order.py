"""
订单相关Schema
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator, model_validator

from app.models.order import OrderStatus, PaymentStatusTag, ServiceType
from app.models.order_step import StepAssignee, StepStatus
from app.schemas.payment import PaymentResponse, PayoutResponse

Money = Annotated[Decimal, Field(max_digits=10, decimal_places=2)]


# ---------- 服务配置：按 service_type 区分的标签联合 ---------- #
class GuestPostConfig(BaseModel):
    kind: Literal["guest_post"] = "guest_post"
    word_count: int = Field(1000, ge=100, le=10000)
    topic: Optional[str] = Field(None, max_length=200)
    dofollow_links: int = Field(1, ge=0, le=5)
    # 发布者/广告主的自由备注
    notes: Dict[str, str] = {}


class LinkPlacementConfig(BaseModel):
    kind: Literal["link_placement"] = "link_placement"
    target_url: str = Field(..., max_length=500)
    anchor_text: str = Field(..., min_length=1, max_length=200)
    link_type: Literal["dofollow", "nofollow"] = "dofollow"
    notes: Dict[str, str] = {}


class SponsoredContentConfig(BaseModel):
    kind: Literal["sponsored_content"] = "sponsored_content"
    content_url: Optional[str] = Field(None, max_length=500)
    disclosure_label: str = Field("Sponsored", max_length=50)
    notes: Dict[str, str] = {}


ServiceConfig = Annotated[
    Union[GuestPostConfig, LinkPlacementConfig, SponsoredContentConfig],
    Field(discriminator="kind"),
]


def _check_http_url(value: str) -> str:
    parsed = urlparse(value.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("must be an http(s) URL")
    return value.strip()


# ---------- 创建订单 ---------- #
class OrderItemCreate(BaseModel):
    """订单服务项"""
    service_type: ServiceType
    service_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    quantity: int = Field(1, ge=1, le=100)
    unit_price: Money = Field(..., gt=0)
    service_config: Optional[ServiceConfig] = None

    @model_validator(mode="after")
    def config_matches_service_type(self):
        if self.service_config is not None and self.service_config.kind != self.service_type.value:
            raise ValueError("service_config.kind must match service_type")
        return self


class OrderAddonCreate(BaseModel):
    """订单附加项"""
    addon_type: str = Field(..., min_length=1, max_length=50)
    addon_name: str = Field(..., min_length=1, max_length=100)
    price: Money = Field(..., ge=0)


class OrderCreate(BaseModel):
    """订单创建"""
    website_id: int
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    requirements: Optional[str] = None
    content_brief: Optional[str] = None
    requested_completion_date: Optional[date] = None
    items: List[OrderItemCreate] = Field(..., min_length=1)
    addons: List[OrderAddonCreate] = []


# ---------- 订单操作请求体 ---------- #
class RejectOrderRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


class SubmitWorkRequest(BaseModel):
    published_url: str = Field(..., max_length=500)

    @field_validator("published_url")
    @classmethod
    def check_url(cls, v: str) -> str:
        return _check_http_url(v)


class ApproveOrderRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)


class RevisionRequest(BaseModel):
    notes: str = Field(..., min_length=1, max_length=2000)


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


# ---------- 响应 ---------- #
class OrderStepResponse(BaseModel):
    step_number: int
    name: str
    description: Optional[str] = None
    status: StepStatus
    assignee: StepAssignee
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class OrderItemResponse(BaseModel):
    id: int
    service_type: ServiceType
    service_name: str
    description: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    service_config: Optional[dict] = None

    class Config:
        from_attributes = True


class OrderAddonResponse(BaseModel):
    addon_type: str
    addon_name: str
    price: Decimal

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    """订单响应（含步骤、当前发票、最近一次打款）"""
    id: int
    advertiser_id: int
    publisher_id: int
    website_id: int
    title: str
    description: Optional[str] = None
    requirements: Optional[str] = None
    content_brief: Optional[str] = None
    subtotal: Decimal
    addon_total: Decimal
    total_amount: Decimal
    status: OrderStatus
    payment_status: PaymentStatusTag
    published_url: Optional[str] = None
    approval_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    dispute_reason: Optional[str] = None
    requested_completion_date: Optional[date] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemResponse] = []
    addons: List[OrderAddonResponse] = []
    steps: List[OrderStepResponse] = []
    payment: Optional[PaymentResponse] = Field(None, validation_alias="active_payment")
    payout: Optional[PayoutResponse] = Field(None, validation_alias="current_payout")

    class Config:
        from_attributes = True
        populate_by_name = True


class OrderListResponse(BaseModel):
    items: List[OrderResponse]
    total: int
    page: int
    page_size: int


class AcceptOrderResponse(BaseModel):
    """接单结果：发票已开出；邮件发送失败时 warning 有值"""
    order: OrderResponse
    warning: Optional[str] = None


class ApproveOrderResponse(BaseModel):
    """验收结果：订单已完成；自动打款失败时 payout_error 有值，可稍后重试"""
    order: OrderResponse
    payout_error: Optional[str] = None
