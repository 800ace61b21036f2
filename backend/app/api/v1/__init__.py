"""
API v1 路由
"""
from fastapi import APIRouter
from app.api.v1 import auth, orders, payments, audit

api_router = APIRouter()

# 注册子路由
api_router.include_router(auth.router, prefix="/auth", tags=["认证"])
api_router.include_router(orders.router, prefix="/orders", tags=["订单"])
api_router.include_router(payments.router, prefix="/payments", tags=["支付回调"])
api_router.include_router(audit.router, prefix="/audit-logs", tags=["审计"])
