import os
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Настройки до первого импорта app
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["SECRET_KEY"] = "test-secret-key-min-32-characters-long"
os.environ["CULQI_WEBHOOK_SECRET"] = "culqi-test-secret"
os.environ["MERCADOPAGO_WEBHOOK_SECRET"] = "mp-test-secret"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["PAYMENT_SWEEP_ENABLED"] = "false"

from app.core.security import create_access_token  # noqa: E402
from app.models import Order, OrderStatus, Payment, PaymentProvider, PaymentStatus, User  # noqa: E402
from app.services.payment_gateways import (  # noqa: E402
    ChargeResult,
    ProviderStatus,
    RefundResult,
    to_minor_units,
)


class FakeGateway:
    """Шлюз в памяти: запоминает вызовы, статусы approved / pending / requires_action."""

    def __init__(
        self,
        provider: PaymentProvider = PaymentProvider.CULQI,
        charge_status: str = "approved",
        external_id: str = "ext_1",
        charge_error: Exception | None = None,
        refund_error: Exception | None = None,
        provider_status: str = "approved",
        status_detail: str | None = None,
    ):
        self.provider = provider
        self.charge_status = charge_status
        self.external_id = external_id
        self.charge_error = charge_error
        self.refund_error = refund_error
        self.provider_status = provider_status
        self.status_detail = status_detail
        self.charges = []
        self.refunds = []
        self.status_checks = []

    async def charge(self, request):
        self.charges.append(request)
        if self.charge_error:
            raise self.charge_error
        return ChargeResult(
            external_id=self.external_id,
            status=self.charge_status,
            raw={"id": self.external_id, "status": self.charge_status},
            card_mask="411111******1111",
            card_brand="visa",
        )

    async def refund(self, request):
        self.refunds.append(request)
        if self.refund_error:
            raise self.refund_error
        return RefundResult(
            refund_id="ref_1",
            status="succeeded",
            raw={"id": "ref_1", "amount": to_minor_units(request.amount)},
        )

    async def get_status(self, external_id):
        self.status_checks.append(external_id)
        return ProviderStatus(
            external_id=external_id,
            status=self.provider_status,
            raw={"id": external_id, "status": self.provider_status},
            status_detail=self.status_detail,
        )

    def is_approved(self, status):
        return status == "approved"

    def is_pending(self, status):
        return status == "pending"

    def requires_additional_action(self, status):
        return status == "requires_action"


class RecordingNotifier:
    def __init__(self):
        self.notifications = []

    async def notify(self, notification):
        self.notifications.append(notification)


class FailingNotifier:
    def __init__(self):
        self.calls = 0

    async def notify(self, notification):
        self.calls += 1
        raise RuntimeError("smtp down")


@pytest_asyncio.fixture
async def engine(tmp_path):
    from app.database import Base

    # Файл, а не :memory:, чтобы несколько сессий видели одни данные
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateways():
    return {provider: FakeGateway(provider) for provider in PaymentProvider}


async def create_user(db: AsyncSession, role: str = "customer", telegram_id: int | None = None) -> User:
    user = User(
        email=f"{role}-{os.urandom(4).hex()}@example.com",
        full_name="Ana Torres",
        telegram_id=telegram_id,
        role=role,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


async def create_order(
    db: AsyncSession,
    user: User,
    total: str = "118.00",
    status: OrderStatus = OrderStatus.PENDING,
) -> Order:
    order = Order(
        order_number=f"ORD-{os.urandom(3).hex()}",
        user_id=user.id,
        total=Decimal(total),
        currency="PEN",
        status=status.value,
    )
    db.add(order)
    await db.commit()
    await db.refresh(order)
    return order


async def create_payment(
    db: AsyncSession,
    order: Order,
    status: PaymentStatus = PaymentStatus.PROCESSING,
    provider: PaymentProvider = PaymentProvider.CULQI,
    external_id: str | None = "chr_test_X",
) -> Payment:
    payment = Payment(
        reference_number=f"PAY-20260101-{os.urandom(2).hex()}",
        user_id=order.user_id,
        order_id=order.id,
        status=status.value,
        provider=provider.value,
        method="credit_card",
        amount=order.total,
        currency=order.currency,
        external_id=external_id,
    )
    db.add(payment)
    await db.commit()
    await db.refresh(payment)
    return payment


def auth_headers(user: User) -> dict[str, str]:
    token = create_access_token({"sub": str(user.id), "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(session_factory, gateways, notifier) -> AsyncGenerator[AsyncClient, None]:
    from app.core.dependencies import get_notifier, get_payment_gateways
    from app.database import get_db
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateways] = lambda: gateways
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
