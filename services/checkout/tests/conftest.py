import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-for-checkout-service-tokens")
os.environ.setdefault("APP_URL", "https://shop.test")

from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select, func
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from checkout.auth_local import AuthenticatedPrincipal, create_access_token
from checkout.application.order_service import OrderService
from checkout.application.payment_service import PaymentService
from checkout.application.schemas import OrderCreate
from checkout.core_settings import Settings
from checkout.domain.enums import Role
from checkout.domain.models import (
    Base, DeliveryFee, DeliveryVoucher, Notification, Product, Voucher, utcnow,
)
from checkout.infrastructure.lipia import LipiaClient

LIPIA_BASE_URL = "https://lipia.test/api/v2"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(DATABASE_URL="sqlite://", LIPIA_API_KEY="test-key", APP_URL="https://shop.test")


@pytest.fixture
def customer():
    return AuthenticatedPrincipal(id="cust-1", role=Role.CUSTOMER, name="Jane Wanjiku")


@pytest.fixture
def other_customer():
    return AuthenticatedPrincipal(id="cust-2", role=Role.CUSTOMER, name="Peter Otieno")


@pytest.fixture
def seller():
    return AuthenticatedPrincipal(id="seller-1", role=Role.SELLER, name="Kienyeji Farm")


@pytest.fixture
def admin():
    return AuthenticatedPrincipal(id="admin-1", role=Role.ADMIN, name="Ops Admin")


@pytest.fixture
def order_service(db, settings):
    return OrderService(db, settings=settings)


@pytest.fixture
def payment_service(db, settings):
    return PaymentService(db, settings=settings)


def make_product(db, **overrides) -> Product:
    values = dict(
        name="Kienyeji Eggs (tray)",
        seller_id="seller-1",
        type="EGGS",
        price=Decimal("100"),
        stock=10,
        is_active=True,
    )
    values.update(overrides)
    product = Product(**values)
    db.add(product)
    db.commit()
    return product


def make_voucher(db, **overrides) -> Voucher:
    now = utcnow()
    values = dict(
        code="SAVE10",
        name="Ten percent off",
        discount_type="PERCENTAGE",
        discount_value=Decimal("10"),
        min_order_amount=Decimal("100"),
        max_uses=100,
        used_count=0,
        valid_from=now - timedelta(days=1),
        valid_until=now + timedelta(days=1),
        is_active=True,
        applicable_product_types=[],
    )
    values.update(overrides)
    voucher = Voucher(**values)
    db.add(voucher)
    db.commit()
    return voucher


def make_delivery_voucher(db, **overrides) -> DeliveryVoucher:
    values = dict(
        code="FREESHIP",
        discount_type="FREE_SHIPPING",
        discount_value=Decimal("0"),
        min_order_amount=Decimal("0"),
        max_uses=10,
        used_count=0,
        expires_at=None,
        is_active=True,
    )
    values.update(overrides)
    voucher = DeliveryVoucher(**values)
    db.add(voucher)
    db.commit()
    return voucher


def make_delivery_fee(db, amount="50") -> DeliveryFee:
    fee = DeliveryFee(name="Standard delivery", amount=Decimal(amount), is_default=True)
    db.add(fee)
    db.commit()
    return fee


def order_payload(items, subtotal, total, **overrides) -> OrderCreate:
    values = dict(
        items=[{"productId": product_id, "quantity": quantity} for product_id, quantity in items],
        paymentType="CASH_ON_DELIVERY",
        subtotal=subtotal,
        total=total,
    )
    values.update(overrides)
    return OrderCreate.model_validate(values)


def count(db, model, *conditions) -> int:
    return db.scalar(select(func.count()).select_from(model).where(*conditions))


def notification_count(db, order_id) -> int:
    return count(db, Notification, Notification.order_id == order_id)


def stock_of(db, product_id) -> int:
    return db.scalar(select(Product.stock).where(Product.id == product_id))


def stk_push_handler(reference="TX-REF-001"):
    """Gateway stub accepting every push and recording the requests."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={
            "success": True,
            "status": "success",
            "message": "STK push initiated",
            "customerMessage": "Success. Request accepted for processing",
            "data": {
                "TransactionReference": reference,
                "ResponseCode": 0,
                "ResponseDescription": "Success. Request accepted for processing",
            },
            "timestamp": "2026-10-19T10:00:00Z",
        })

    handler.calls = calls
    return handler


@pytest.fixture
def gateway_handler():
    return stk_push_handler()


@pytest.fixture
def gateway(gateway_handler):
    return LipiaClient(LIPIA_BASE_URL, "test-key", transport=httpx.MockTransport(gateway_handler))


@pytest.fixture
def client(session_factory, gateway):
    from checkout.main import app
    from checkout.api.deps import get_gateway
    from checkout.infrastructure.db import get_db

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(principal: AuthenticatedPrincipal) -> dict:
    token = create_access_token(principal.id, principal.role, name=principal.name)
    return {"Authorization": f"Bearer {token}"}
