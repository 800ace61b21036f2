# Database models
from app.models.user import User, UserRole
from app.models.website import Website
from app.models.order import Order, OrderItem, OrderAddon, OrderStatus, PaymentStatusTag, ServiceType
from app.models.order_step import OrderStep, StepStatus, StepAssignee
from app.models.payment import Payment, InvoiceStatus
from app.models.payout import Payout, PayoutStatus
from app.models.audit_log import AuditLog

__all__ = [
    "User",
    "UserRole",
    "Website",
    "Order",
    "OrderItem",
    "OrderAddon",
    "OrderStatus",
    "PaymentStatusTag",
    "ServiceType",
    "OrderStep",
    "StepStatus",
    "StepAssignee",
    "Payment",
    "InvoiceStatus",
    "Payout",
    "PayoutStatus",
    "AuditLog",
]
