import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import relationship

from storefront.database import Base


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    CANCELLED = "cancelled"


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _enum(enum_cls):
    # store the lower-case values, not the member names
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


Money = Numeric(10, 2, asdecimal=True)


class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    price = Column(Money, nullable=False)
    quantity = Column(Integer, nullable=False, default=0)

    variants = relationship("ProductVariant", back_populates="product", cascade="all, delete-orphan")


class ProductVariant(Base):
    __tablename__ = "product_variants"

    id = Column(String(36), primary_key=True, default=_uuid)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="CASCADE"), index=True)
    sku = Column(String(64))
    price = Column(Money, nullable=True)   # falls back to product price
    quantity = Column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="variants")


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), index=True, nullable=False)
    order_number = Column(String(32), unique=True, nullable=False)
    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING)

    subtotal = Column(Money, nullable=False)
    tax = Column(Money, nullable=False)
    shipping = Column(Money, nullable=False)
    discount = Column(Money, nullable=False, default=Decimal("0"))
    total = Column(Money, nullable=False)

    shipping_address = Column(Text)            # frozen JSON snapshot
    billing_address = Column(Text)
    payment_method = Column(String(32))
    payment_id = Column(String(36))

    is_paid = Column(Boolean, nullable=False, default=False)
    paid_at = Column(DateTime)
    shipped_at = Column(DateTime)
    delivered_at = Column(DateTime)
    cancelled_at = Column(DateTime)
    cancel_reason = Column(String(255))

    extra = Column("metadata", JSON)
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    product_id = Column(String(36), nullable=False)
    variant_id = Column(String(36))
    name = Column(String(255), nullable=False)
    price = Column(Money, nullable=False)
    quantity = Column(Integer, nullable=False)
    image = Column(String(512))
    attributes = Column(JSON)

    order = relationship("Order", back_populates="items")


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    amount = Column(Money, nullable=False)
    provider = Column(_enum(PaymentProvider), nullable=False)
    status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)

    transaction_id = Column(String(255), index=True)
    payment_intent_id = Column(String(255), index=True)   # Stripe PaymentIntent ID
    payment_details = Column(JSON)
    error_message = Column(String(512))
    refunded_amount = Column(Money, nullable=False, default=Decimal("0"))

    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    order = relationship("Order", back_populates="payments")
