"""
数据库连接：异步引擎、会话工厂、FastAPI 依赖
"""
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import declarative_base

from app.core.config import settings

Base = declarative_base()

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DATABASE_ECHO,
    pool_pre_ping=True,
)

# expire_on_commit=False：提交后仍可读取属性，避免异步下的隐式懒加载
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI 依赖：每个请求一个会话，结束时关闭"""
    async with AsyncSessionLocal() as session:
        yield session


def create_async_engine_and_session_for_celery():
    """
    Celery 任务内使用：为当前事件循环单独创建 engine/session。
    全局 engine 绑定在 Web 进程的 loop 上，在 worker 的新 loop 中复用会报错。
    """
    task_engine = create_async_engine(settings.DATABASE_URL, echo=False, pool_pre_ping=True)
    session_factory = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return task_engine, session_factory


def enum_type(enum_cls) -> SQLEnum:
    """字符串枚举列：库里存枚举的 value（而不是名字），不建原生 ENUM 类型"""
    return SQLEnum(enum_cls, native_enum=False, values_callable=lambda e: [m.value for m in e])
