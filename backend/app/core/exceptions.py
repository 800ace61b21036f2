"""
业务异常：每类异常自带 HTTP 状态码与可直接展示给用户的 detail
"""
from typing import Any, Optional


class MarketplaceError(Exception):
    """业务异常基类"""
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None, **context: Any):
        self.detail = detail or self.default_detail
        # context 只写日志，不返回给调用方
        self.context = context
        super().__init__(self.detail)


class ValidationError(MarketplaceError):
    """输入或前置条件不满足，不应重试"""
    status_code = 400
    default_detail = "Invalid request"


class AlreadyExistsError(ValidationError):
    """资源已存在（如订单已有有效发票/打款）"""
    status_code = 409
    default_detail = "Resource already exists"


class AuthorizationError(MarketplaceError):
    """操作人与预期角色不符"""
    status_code = 403
    default_detail = "You are not allowed to perform this action"


class NotFoundError(MarketplaceError):
    status_code = 404
    default_detail = "Not found"


class ConflictError(MarketplaceError):
    """订单状态已被并发修改（条件更新影响 0 行）或请求已过期"""
    status_code = 409
    default_detail = "Order state changed, please refresh"


class ExternalServiceError(MarketplaceError):
    """支付服务调用失败，本地状态未改变，可以重试"""
    status_code = 502
    default_detail = "Payment provider is unavailable, please try again later"


class ReconciliationError(MarketplaceError):
    """外部资源已创建但本地落库失败：只记 CRITICAL 日志，人工处理，不自动重试"""
    status_code = 500
    default_detail = "Internal server error"


class ExternalResponseError(ExternalServiceError):
    """支付服务返回 2xx 但响应无法解析：请求可能已生效，不能按失败重试"""
    default_detail = "Payment provider returned an unreadable response"
