"""
测试夹具：每个测试一个临时 SQLite 库、假支付服务、种子用户与网站
"""
import os

# 必须在导入 app 之前设置
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CACHE_ENABLED"] = "false"
os.environ["AUDIT_LOG_ENABLED"] = "true"
os.environ["WEBHOOK_VERIFY_ENABLED"] = "true"
os.environ["PLATFORM_FEE_PERCENTAGE"] = "15"

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.database import Base, get_db
from app.core.exceptions import ExternalServiceError
from app.models.user import User, UserRole
from app.models.website import Website
from app.schemas.auth import Principal
from app.schemas.order import OrderAddonCreate, OrderCreate, OrderItemCreate
from app.schemas.payment import (
    CreatedInvoice,
    CreatedPayout,
    ExternalInvoiceState,
    ExternalPayoutItemState,
)
from app.services.auth_service import AuthService


class FakeProcessor:
    """假支付服务：记录调用，按开关模拟失败"""

    def __init__(self):
        self.invoices: List[Dict[str, Any]] = []
        self.payouts: List[Dict[str, Any]] = []
        self.fail_invoice = False
        self.send_warning: Optional[str] = None
        self.fail_payout = False
        self.payout_exception: Optional[Exception] = None
        self.return_item_id = True
        self.verify_result = True
        self.invoice_states: Dict[str, str] = {}
        self.payout_states: Dict[str, str] = {}
        # 外部调用返回前执行，用来模拟调用期间订单被并发修改
        self.after_create_invoice: Optional[Callable[[], Awaitable[None]]] = None
        self.after_create_payout: Optional[Callable[[], Awaitable[None]]] = None

    async def create_invoice(self, **kwargs) -> CreatedInvoice:
        if self.fail_invoice:
            raise ExternalServiceError(reason="invoice api down")
        invoice_id = f"INV2-TEST-{len(self.invoices) + 1:04d}"
        self.invoices.append({**kwargs, "invoice_id": invoice_id})
        if self.after_create_invoice is not None:
            await self.after_create_invoice()
        return CreatedInvoice(
            invoice_id=invoice_id,
            invoice_url=f"https://www.sandbox.paypal.com/invoice/p/#{invoice_id}",
            warning=self.send_warning,
        )

    async def create_payout(self, **kwargs) -> CreatedPayout:
        if self.fail_payout:
            raise ExternalServiceError("Payout was rejected by the payment provider", reason="RECEIVER_UNREGISTERED")
        if self.payout_exception is not None:
            raise self.payout_exception
        n = len(self.payouts) + 1
        created = CreatedPayout(
            batch_id=f"BATCH-{n}",
            item_id=f"ITEM-{n}" if self.return_item_id else None,
            status="PENDING",
        )
        self.payouts.append({**kwargs, "batch_id": created.batch_id, "item_id": created.item_id})
        if self.after_create_payout is not None:
            await self.after_create_payout()
        return created

    async def verify_webhook_signature(self, headers, event) -> bool:
        return self.verify_result

    async def get_invoice(self, invoice_id: str) -> ExternalInvoiceState:
        return ExternalInvoiceState(
            invoice_id=invoice_id,
            status=self.invoice_states.get(invoice_id, "SENT"),
            transaction_id="TX-RECONCILED",
        )

    async def get_payout_item(self, item_id: str) -> ExternalPayoutItemState:
        status = self.payout_states.get(item_id, "PENDING")
        return ExternalPayoutItemState(
            item_id=item_id,
            transaction_status=status,
            failure_reason="Receiver account is locked" if status == "FAILED" else None,
        )

    async def get_payout_batch(self, batch_id: str) -> Optional[ExternalPayoutItemState]:
        """BATCH-n 的唯一条目是 ITEM-n"""
        item_id = batch_id.replace("BATCH-", "ITEM-")
        status = self.payout_states.get(item_id, "PENDING")
        return ExternalPayoutItemState(
            item_id=item_id,
            batch_id=batch_id,
            transaction_status=status,
            failure_reason="Receiver account is locked" if status == "FAILED" else None,
        )


@dataclass
class Seed:
    advertiser: User
    publisher: User
    other_publisher: User
    admin: User
    website: Website

    @property
    def advertiser_principal(self) -> Principal:
        return Principal(user_id=self.advertiser.id, role=UserRole.ADVERTISER)

    @property
    def publisher_principal(self) -> Principal:
        return Principal(user_id=self.publisher.id, role=UserRole.PUBLISHER)

    @property
    def other_publisher_principal(self) -> Principal:
        return Principal(user_id=self.other_publisher.id, role=UserRole.PUBLISHER)

    @property
    def admin_principal(self) -> Principal:
        return Principal(user_id=self.admin.id, role=UserRole.ADMIN)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest_asyncio.fixture
async def seed(session_factory) -> Seed:
    async with session_factory() as session:
        advertiser = User(email="buyer@example.com", full_name="Ada Buyer", role=UserRole.ADVERTISER)
        publisher = User(
            email="pub@example.com",
            full_name="Pat Publisher",
            role=UserRole.PUBLISHER,
            payout_email="pub-paypal@example.com",
        )
        other_publisher = User(email="other@example.com", role=UserRole.PUBLISHER)
        admin = User(email="ops@example.com", role=UserRole.ADMIN)
        session.add_all([advertiser, publisher, other_publisher, admin])
        await session.flush()
        website = Website(publisher_id=publisher.id, name="Tech Weekly", url="https://techweekly.example.com")
        session.add(website)
        await session.commit()
        return Seed(advertiser, publisher, other_publisher, admin, website)


def order_payload(website_id: int, unit_price: str = "150.00", addon_price: Optional[str] = "7.50") -> OrderCreate:
    """默认合计 157.50"""
    addons = []
    if addon_price is not None:
        addons.append(OrderAddonCreate(addon_type="rush", addon_name="Rush delivery", price=Decimal(addon_price)))
    return OrderCreate(
        website_id=website_id,
        title="Guest post about observability",
        description="1500 words with two links",
        items=[
            OrderItemCreate(
                service_type="guest_post",
                service_name="Guest post",
                unit_price=Decimal(unit_price),
                service_config={"kind": "guest_post", "word_count": 1500, "topic": "observability"},
            )
        ],
        addons=addons,
    )


def make_token(user: User) -> str:
    return AuthService(None).create_access_token({"sub": user.id})


def auth_headers(user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user)}"}


@pytest_asyncio.fixture
async def client(session_factory, processor):
    from app.api.deps import get_payment_processor
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_processor] = lambda: processor
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


# ---------- 推进订单的辅助函数：每步一个新会话，模拟独立请求 ---------- #
async def place_order(session_factory, seed: Seed, **kwargs) -> int:
    from app.services.order_service import OrderService

    async with session_factory() as session:
        order = await OrderService(session).create_order(
            seed.advertiser_principal, order_payload(seed.website.id, **kwargs)
        )
        return order.id


async def accept_order(session_factory, seed: Seed, processor: FakeProcessor, order_id: int):
    from app.services.invoice_service import InvoiceService

    async with session_factory() as session:
        order, _ = await InvoiceService(session, processor).issue_invoice(seed.publisher_principal, order_id)
        return order


async def invoice_paid(session_factory, processor: FakeProcessor, transaction_id: str = "TX-1"):
    from app.services.webhook_service import WebhookService

    async with session_factory() as session:
        invoice_id = processor.invoices[-1]["invoice_id"]
        return await WebhookService(session, processor).apply_invoice_paid(invoice_id, transaction_id)


async def deliver(session_factory, seed: Seed, order_id: int, url: str = "https://techweekly.example.com/post"):
    from app.services.order_service import OrderService

    async with session_factory() as session:
        return await OrderService(session).submit_work(seed.publisher_principal, order_id, url)


async def approve(session_factory, seed: Seed, order_id: int, notes: Optional[str] = None):
    from app.services.order_service import OrderService

    async with session_factory() as session:
        return await OrderService(session).approve_order(seed.advertiser_principal, order_id, notes)


async def issue_payout(session_factory, seed: Seed, processor: FakeProcessor, order_id: int):
    from app.services.payout_service import PayoutService

    async with session_factory() as session:
        return await PayoutService(session, processor).issue_payout(seed.advertiser_principal, order_id)


async def order_in_review(session_factory, seed: Seed, processor: FakeProcessor) -> int:
    order_id = await place_order(session_factory, seed)
    await accept_order(session_factory, seed, processor, order_id)
    await invoice_paid(session_factory, processor)
    await deliver(session_factory, seed, order_id)
    return order_id


async def order_completed(session_factory, seed: Seed, processor: FakeProcessor) -> int:
    order_id = await order_in_review(session_factory, seed, processor)
    await approve(session_factory, seed, order_id)
    return order_id
