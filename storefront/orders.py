import json
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from storefront.config import OrderConfig
from storefront.errors import InvalidStatusTransitionError, NotFoundError, ValidationError
from storefront.models import Order, OrderItem, OrderStatus, Product, ProductVariant

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")

# Happy path: PENDING -> PROCESSING -> PAID -> SHIPPED -> DELIVERED.
ORDER_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.PROCESSING, OrderStatus.PAID,
        OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED,
    },
    OrderStatus.PROCESSING: {OrderStatus.PAID, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED},
    OrderStatus.PAYMENT_FAILED: {OrderStatus.PROCESSING, OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.PAID: {OrderStatus.SHIPPED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

# Vocabulary used by payment provider webhooks.
STATUS_ALIASES = {
    "PAID": OrderStatus.PAID,
    "SHIPPED": OrderStatus.SHIPPED,
    "DELIVERED": OrderStatus.DELIVERED,
    "CANCELLED": OrderStatus.CANCELLED,
    "REFUNDED": OrderStatus.REFUNDED,
}


def resolve_status(token) -> OrderStatus:
    """Map a canonical status or provider alias to an OrderStatus.

    Unrecognised tokens resolve to PROCESSING.
    """
    if isinstance(token, OrderStatus):
        return token
    try:
        return OrderStatus(token)
    except ValueError:
        return STATUS_ALIASES.get(token, OrderStatus.PROCESSING)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return current == target or target in ORDER_TRANSITIONS[current]


@dataclass
class LineItem:
    product_id: str
    quantity: int
    variant_id: str | None = None
    attributes: dict = field(default_factory=dict)
    image: str | None = None


def format_address(address: dict | None) -> str | None:
    if not address:
        return None
    keys = ("full_name", "address_line1", "address_line2", "city", "state",
            "postal_code", "country", "phone")
    return json.dumps({k: address.get(k) for k in keys})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class OrderService:
    """Owns order creation, lookups and status changes.

    The payment layer only touches orders through `find_one`,
    `update_payment_status` and `update_order_status`.
    """

    def __init__(self, db: Session, config: OrderConfig):
        self.db = db
        self.config = config

    def create(
        self,
        user_id: str,
        items: list[LineItem],
        shipping_address: dict | None,
        billing_address: dict | None = None,
        same_as_shipping: bool = False,
        payment_method: str | None = None,
        notes: str | None = None,
    ) -> Order:
        if not items:
            raise ValidationError("Order must contain at least one item")

        priced = [self._price_item(item) for item in items]
        subtotal, tax, shipping, discount, total = self.calculate_totals(
            [(price, item.quantity) for item, price, _, _ in priced]
        )

        shipping_snapshot = format_address(shipping_address)
        billing_snapshot = shipping_snapshot if same_as_shipping else format_address(billing_address)

        order = Order(
            user_id=user_id,
            order_number=self._generate_order_number(),
            status=OrderStatus.PENDING,
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            discount=discount,
            total=total,
            shipping_address=shipping_snapshot,
            billing_address=billing_snapshot,
            payment_method=payment_method,
            extra={"notes": notes},
        )
        for item, price, name, stock_row in priced:
            order.items.append(OrderItem(
                product_id=item.product_id,
                variant_id=item.variant_id,
                name=name,
                price=price,
                quantity=item.quantity,
                image=item.image,
                attributes=item.attributes or {},
            ))
            stock_row.quantity -= item.quantity
            if stock_row.quantity < 0:
                # same product listed twice
                self.db.rollback()
                raise ValidationError(f"Insufficient stock for {name}")

        self.db.add(order)
        self.db.commit()
        self.db.refresh(order)
        logger.info("order_created", order_id=order.id, order_number=order.order_number,
                    total=str(order.total), user_id=user_id)
        return order

    def _price_item(self, item: LineItem):
        if item.quantity < 1:
            raise ValidationError(f"Invalid quantity for product {item.product_id}")

        product = self.db.get(Product, item.product_id)
        if product is None:
            raise NotFoundError("Product", item.product_id)

        stock_row = product
        price = product.price
        if item.variant_id:
            variant = self.db.get(ProductVariant, item.variant_id)
            if variant is None or variant.product_id != product.id:
                raise NotFoundError("Product variant", item.variant_id)
            stock_row = variant
            if variant.price is not None:
                price = variant.price

        if stock_row.quantity < item.quantity:
            raise ValidationError(f"Insufficient stock for {product.name}")
        return item, Decimal(price), product.name, stock_row

    def calculate_totals(self, lines):
        subtotal = sum((price * qty for price, qty in lines), Decimal("0")).quantize(CENTS)
        tax = (subtotal * self.config.tax_rate).quantize(CENTS, rounding=ROUND_HALF_UP)
        if subtotal >= self.config.free_shipping_threshold:
            shipping = Decimal("0.00")
        else:
            shipping = self.config.base_shipping_rate.quantize(CENTS)
        discount = Decimal("0.00")
        total = subtotal + tax + shipping - discount
        return subtotal, tax, shipping, discount, total

    @staticmethod
    def _generate_order_number() -> str:
        date_str = datetime.now(timezone.utc).strftime("%Y%m%d")
        return f"ORD-{date_str}-{random.randint(0, 9999):04d}"

    def find_all(self, user_id: str | None = None) -> list[Order]:
        stmt = select(Order).order_by(Order.created_at.desc())
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        return list(self.db.scalars(stmt))

    def find_one(self, order_id: str) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    def find_by_order_number(self, order_number: str) -> Order:
        order = self.db.scalar(select(Order).where(Order.order_number == order_number))
        if order is None:
            raise NotFoundError("Order", order_number)
        return order

    def update_payment_status(self, order_id: str, is_paid: bool, payment_id: str | None = None) -> Order:
        order = self.find_one(order_id)
        target = OrderStatus.PAID if is_paid else OrderStatus.PAYMENT_FAILED
        self._apply_status(order, target)
        if payment_id:
            order.payment_id = payment_id
        self.db.commit()
        self.db.refresh(order)
        return order

    def update_order_status(self, order_id: str, status) -> Order:
        order = self.find_one(order_id)
        self._apply_status(order, resolve_status(status))
        self.db.commit()
        self.db.refresh(order)
        return order

    def cancel(self, order_id: str, reason: str | None) -> Order:
        order = self.find_one(order_id)
        if order.status != OrderStatus.PENDING:
            raise ValidationError("Only pending orders can be cancelled")
        self._apply_status(order, OrderStatus.CANCELLED, reason=reason)
        self.db.commit()
        self.db.refresh(order)
        return order

    def _apply_status(self, order: Order, target: OrderStatus, reason: str | None = None) -> None:
        current = OrderStatus(order.status)
        if current == target:
            return
        if not can_transition(current, target):
            raise InvalidStatusTransitionError(current, target)

        now = _now()
        order.status = target
        if target == OrderStatus.PAID:
            order.is_paid = True
            order.paid_at = now
        elif target == OrderStatus.PAYMENT_FAILED:
            order.is_paid = False
        elif target == OrderStatus.SHIPPED:
            order.shipped_at = now
        elif target == OrderStatus.DELIVERED:
            order.delivered_at = now
        elif target == OrderStatus.CANCELLED:
            order.cancelled_at = now
            order.cancel_reason = reason or "No reason provided"
        elif target == OrderStatus.REFUNDED:
            order.is_paid = False
        logger.info("order_status_changed", order_id=order.id,
                    previous=current.value, status=target.value)

    def statistics(self) -> dict:
        def count(status=None):
            stmt = select(func.count()).select_from(Order)
            if status is not None:
                stmt = stmt.where(Order.status == status)
            return self.db.scalar(stmt)

        revenue = self.db.scalar(
            select(func.coalesce(func.sum(Order.total), 0)).where(Order.status == OrderStatus.DELIVERED)
        )
        return {
            "total_orders": count(),
            "pending_orders": count(OrderStatus.PENDING),
            "completed_orders": count(OrderStatus.DELIVERED),
            "cancelled_orders": count(OrderStatus.CANCELLED),
            "total_revenue": Decimal(str(revenue)).quantize(CENTS),
        }
