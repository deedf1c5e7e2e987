from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from storefront.auth import is_admin, require_admin, verify_token
from storefront.config import get_settings
from storefront.database import get_db
from storefront.errors import NotFoundError
from storefront.models import OrderStatus
from storefront.orders import LineItem, OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


def get_order_service(db: Session = Depends(get_db)) -> OrderService:
    return OrderService(db, get_settings().orders)


class Address(BaseModel):
    full_name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str
    phone: Optional[str] = None


class OrderItemRequest(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(ge=1)
    attributes: dict[str, Any] = Field(default_factory=dict)
    image: Optional[str] = None


class CreateOrderRequest(BaseModel):
    items: list[OrderItemRequest] = Field(min_length=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    same_as_shipping: bool = False
    payment_method: Optional[str] = None
    notes: Optional[str] = None


class StatusRequest(BaseModel):
    status: str


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    product_id: str
    variant_id: Optional[str] = None
    name: str
    price: Decimal
    quantity: int
    attributes: Optional[dict[str, Any]] = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    order_number: str
    status: OrderStatus
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal
    shipping_address: Optional[str] = None
    billing_address: Optional[str] = None
    payment_method: Optional[str] = None
    payment_id: Optional[str] = None
    is_paid: bool
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    items: list[OrderItemResponse] = []
    created_at: Optional[datetime] = None


def owned_order(service: OrderService, order_id: str, claims: dict):
    order = service.find_one(order_id)
    if order.user_id != claims["sub"] and not is_admin(claims):
        # don't leak other users' order ids
        raise NotFoundError("Order", order_id)
    return order


@router.post("", response_model=OrderResponse, status_code=201)
def create_order(
    request: CreateOrderRequest,
    claims: dict = Depends(verify_token),
    service: OrderService = Depends(get_order_service),
):
    return service.create(
        user_id=claims["sub"],
        items=[LineItem(**item.model_dump()) for item in request.items],
        shipping_address=request.shipping_address.model_dump(),
        billing_address=request.billing_address.model_dump() if request.billing_address else None,
        same_as_shipping=request.same_as_shipping,
        payment_method=request.payment_method,
        notes=request.notes,
    )


@router.get("", response_model=list[OrderResponse])
def list_orders(claims: dict = Depends(verify_token), service: OrderService = Depends(get_order_service)):
    return service.find_all(None if is_admin(claims) else claims["sub"])


@router.get("/statistics")
def order_statistics(auth=Depends(require_admin), service: OrderService = Depends(get_order_service)):
    return service.statistics()


@router.get("/{order_id}", response_model=OrderResponse)
def get_order(order_id: str, claims: dict = Depends(verify_token), service: OrderService = Depends(get_order_service)):
    return owned_order(service, order_id, claims)


@router.patch("/{order_id}/status", response_model=OrderResponse)
def update_order_status(
    order_id: str,
    request: StatusRequest,
    auth=Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    return service.update_order_status(order_id, request.status)


@router.post("/{order_id}/cancel", response_model=OrderResponse)
def cancel_order(
    order_id: str,
    request: CancelRequest,
    claims: dict = Depends(verify_token),
    service: OrderService = Depends(get_order_service),
):
    owned_order(service, order_id, claims)
    return service.cancel(order_id, request.reason)
