"""审计日志 Schema"""
import json
from datetime import datetime
from typing import Any, Optional, List
from pydantic import BaseModel, model_validator


def _detail_dict(detail: Optional[str]) -> dict[str, Any]:
    """detail 可能是 JSON，也可能是简短描述"""
    if not detail:
        return {}
    try:
        data = json.loads(detail)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class AuditLogItem(BaseModel):
    id: int
    user_id: Optional[int] = None
    action: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    detail: Optional[str] = None
    ip: Optional[str] = None
    request_id: Optional[str] = None
    created_at: datetime
    # 从 resource / detail 推导：关联订单，以及 operator_attention 的原因
    order_id: Optional[int] = None
    reason: Optional[str] = None

    class Config:
        from_attributes = True

    @model_validator(mode="after")
    def derive_order_fields(self) -> "AuditLogItem":
        data = _detail_dict(self.detail)
        if self.order_id is None:
            if self.resource_type == "order" and self.resource_id and self.resource_id.isdigit():
                self.order_id = int(self.resource_id)
            elif isinstance(data.get("order_id"), int):
                self.order_id = data["order_id"]
        if self.reason is None and isinstance(data.get("reason"), str):
            self.reason = data["reason"]
        return self


class AuditLogListResponse(BaseModel):
    items: List[AuditLogItem]
    total: int
    page: int
    page_size: int
