"""
FastAPI主应用入口
"""
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import settings
from app.core.database import engine, Base
from app.core.exceptions import MarketplaceError, ReconciliationError
from app.api.v1 import api_router
from app.core.logging import setup_logging
from app.core.health import check_db, check_payment_processor, check_redis

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    # 生产环境由迁移脚本建表；这里只补齐缺失的表
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    ok, msg = check_payment_processor()
    if not ok:
        logger.warning("PayPal 配置不完整，接单与打款将失败: %s", msg)

    yield

    await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    description="外链交易平台：订单履约与支付编排 API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """X-Request-ID：客户端传入则沿用，否则生成；审计日志与错误响应都带上它"""
    rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = rid
    response = await call_next(request)
    response.headers["X-Request-ID"] = rid
    return response


def _error(request: Request, status_code: int, detail: str, headers: Optional[dict] = None, **extra: Any) -> JSONResponse:
    """错误响应统一为 {detail, request_id, ...}"""
    body = {"detail": detail, "request_id": getattr(request.state, "request_id", None), **extra}
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@app.exception_handler(MarketplaceError)
async def marketplace_exception_handler(request: Request, exc: MarketplaceError):
    """业务异常：状态码与 detail 由异常类型决定，context 只写日志"""
    rid = getattr(request.state, "request_id", None)
    name = type(exc).__name__
    if isinstance(exc, ReconciliationError):
        logger.critical("需人工对账 request_id=%s %s", rid, exc.context)
    elif exc.status_code >= 500:
        logger.error("%s request_id=%s %s", name, rid, exc.context)
    else:
        logger.info("%s request_id=%s detail=%s %s", name, rid, exc.detail, exc.context)
    return _error(request, exc.status_code, exc.detail)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _error(request, exc.status_code, detail, headers=getattr(exc, "headers", None))


def jsonable_errors(errs: list) -> list:
    """pydantic 错误里的 ctx 可能含异常对象，转成字符串；不回显 input"""
    out = []
    for err in errs:
        err = dict(err)
        if "ctx" in err:
            err["ctx"] = {k: str(v) for k, v in err["ctx"].items()}
        err.pop("input", None)
        out.append(err)
    return out


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errs = exc.errors()
    detail = errs[0].get("msg", "请求参数校验失败") if errs else "请求参数校验失败"
    return _error(request, 422, detail, errors=jsonable_errors(errs))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("未捕获异常 request_id=%s: %s", getattr(request.state, "request_id", None), exc)
    return _error(request, 500, "服务器内部错误")


app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
async def root():
    return {"message": settings.PROJECT_NAME, "version": "1.0.0", "docs": "/docs"}


@app.get("/health")
async def health_check():
    """健康检查：数据库、Redis 必须可用；PayPal 只报告配置状态，不影响整体结果"""
    db_ok, db_msg = await check_db()
    redis_ok, redis_msg = check_redis()
    paypal_ok, paypal_msg = check_payment_processor()
    return {
        "status": "healthy" if db_ok and redis_ok else "degraded",
        "service": "marketplace-api",
        "dependencies": {
            "database": {"ok": db_ok, "message": db_msg},
            "redis": {"ok": redis_ok, "message": redis_msg},
            "paypal": {"ok": paypal_ok, "message": paypal_msg},
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_excludes=["**/__pycache__/**", "**/*.pyc"],
    )
