import uuid
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import storefront.auth
from storefront.config import OrderConfig
from storefront.database import Base, get_db
from storefront.main import app as fastapi_app
from storefront.models import (
    Order,
    OrderStatus,
    Payment,
    PaymentProvider,
    PaymentStatus,
    Product,
    ProductVariant,
)
from storefront.orders import OrderService
from storefront.payments import PaymentService
from storefront.providers import PaymentResult, PaymentStrategy

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_storefront.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def identity():
    # tests flip "role" to "admin" where needed
    return {"sub": "user-1", "role": "customer"}


@pytest.fixture
def client(identity):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[storefront.auth.verify_token] = lambda: identity

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


class FakeStrategy(PaymentStrategy):
    """Records every call; results are configurable per test."""

    def __init__(self, valid_signature=True):
        self.calls = []
        self.valid_signature = valid_signature
        self.create_result = PaymentResult.ok(
            PaymentStatus.PENDING,
            payment_intent_id="pi_fake",
            details={"client_secret": "pi_fake_secret"},
        )
        self.process_result = PaymentResult.ok(
            PaymentStatus.SUCCEEDED, transaction_id="ch_fake", payment_intent_id="pi_fake"
        )
        self.on_process = None

    def create_payment(self, amount, metadata):
        self.calls.append(("create", amount, metadata))
        return self.create_result

    def process_payment(self, payment_data):
        self.calls.append(("process", payment_data))
        if self.on_process:
            self.on_process()
        return self.process_result

    def refund_payment(self, transaction_id, amount=None):
        self.calls.append(("refund", transaction_id, amount))
        return PaymentResult.ok(
            PaymentStatus.PARTIALLY_REFUNDED if amount is not None else PaymentStatus.REFUNDED,
            transaction_id=f"re_{len(self.calls)}",
            details={"refunded_amount": str(amount) if amount is not None else "full"},
        )

    def verify_webhook(self, payload, signature):
        self.calls.append(("verify", payload, signature))
        return self.valid_signature

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def fake_strategy():
    return FakeStrategy()


@pytest.fixture
def order_service(db):
    return OrderService(db, OrderConfig())


@pytest.fixture
def payment_service(db, order_service, fake_strategy):
    return PaymentService(db, order_service, {
        PaymentProvider.STRIPE: fake_strategy,
        PaymentProvider.PAYPAL: fake_strategy,
    })


@pytest.fixture
def make_order(db):
    def _make(total="59.97", status=OrderStatus.PENDING, user_id="user-1"):
        total = Decimal(total)
        order = Order(
            user_id=user_id,
            order_number=f"ORD-TEST-{uuid.uuid4().hex[:8]}",
            status=status,
            subtotal=total,
            tax=Decimal("0.00"),
            shipping=Decimal("0.00"),
            discount=Decimal("0.00"),
            total=total,
            is_paid=status == OrderStatus.PAID,
        )
        db.add(order)
        db.commit()
        db.refresh(order)
        return order
    return _make


@pytest.fixture
def make_payment(db):
    def _make(order, status=PaymentStatus.PENDING, provider=PaymentProvider.STRIPE, **fields):
        payment = Payment(
            order_id=order.id,
            amount=order.total,
            provider=provider,
            status=status,
            payment_details={},
            **fields,
        )
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment
    return _make


@pytest.fixture
def make_product(db):
    def _make(name="Mug", price="19.99", quantity=10, variants=()):
        product = Product(name=name, price=Decimal(price), quantity=quantity)
        for sku, variant_price, variant_qty in variants:
            product.variants.append(ProductVariant(
                sku=sku,
                price=Decimal(variant_price) if variant_price else None,
                quantity=variant_qty,
            ))
        db.add(product)
        db.commit()
        db.refresh(product)
        return product
    return _make

