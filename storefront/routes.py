import json
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from storefront.auth import require_admin, verify_token
from storefront.config import get_settings
from storefront.database import get_db
from storefront.errors import NotFoundError
from storefront.models import PaymentProvider, PaymentStatus
from storefront.order_routes import get_order_service, owned_order
from storefront.orders import OrderService
from storefront.payments import PaymentService
from storefront.providers import build_strategies

router = APIRouter()


@lru_cache
def _strategies():
    return build_strategies(get_settings())


def get_strategies():
    return _strategies()


def get_payment_service(
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
    strategies: dict = Depends(get_strategies),
) -> PaymentService:
    return PaymentService(db, orders, strategies)


class PaymentRequest(BaseModel):
    order_id: str
    amount: Decimal
    provider: PaymentProvider
    payment_details: Optional[dict[str, Any]] = None


class FinalizeRequest(BaseModel):
    provider_payload: dict[str, Any] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = None


class UpdatePaymentRequest(BaseModel):
    status: Optional[PaymentStatus] = None
    transaction_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_details: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    amount: Decimal
    provider: PaymentProvider
    status: PaymentStatus
    transaction_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_details: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    refunded_amount: Decimal = Decimal("0")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WebhookResponse(BaseModel):
    success: bool
    message: str


PAYPAL_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "transmission_sig": "paypal-transmission-sig",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
}


def _owned_payment(service: PaymentService, payment_id: str, claims: dict):
    payment = service.find_one(payment_id)
    try:
        owned_order(service.orders, payment.order_id, claims)
    except NotFoundError:
        raise NotFoundError("Payment", payment_id)
    return payment


def webhook_signature(provider: PaymentProvider, headers) -> Optional[str]:
    if provider == PaymentProvider.PAYPAL:
        return json.dumps({key: headers.get(name) for key, name in PAYPAL_HEADERS.items()})
    return headers.get("stripe-signature")


@router.post("/payments", response_model=PaymentResponse, status_code=201)
def create_payment_api(
    request: PaymentRequest,
    claims: dict = Depends(verify_token),
    orders: OrderService = Depends(get_order_service),
    service: PaymentService = Depends(get_payment_service),
):
    owned_order(orders, request.order_id, claims)
    return service.create(request.order_id, request.amount, request.provider, request.payment_details)


@router.post("/payments/{payment_id}/finalize", response_model=PaymentResponse)
def finalize_payment(
    payment_id: str,
    request: FinalizeRequest,
    claims: dict = Depends(verify_token),
    service: PaymentService = Depends(get_payment_service),
):
    _owned_payment(service, payment_id, claims)
    return service.finalize(payment_id, request.provider_payload)


@router.post("/payments/{payment_id}/refund", response_model=PaymentResponse)
def refund(
    payment_id: str,
    request: Optional[RefundRequest] = None,
    auth=Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    return service.refund(payment_id, request.amount if request else None)


@router.post("/webhooks/{provider}", response_model=WebhookResponse)
@router.post("/payments/webhook/{provider}", response_model=WebhookResponse)
async def payment_webhook(
    provider: PaymentProvider,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
):
    payload = await request.body()
    signature = webhook_signature(provider, request.headers)
    return await run_in_threadpool(service.process_webhook, provider, payload, signature)


@router.get("/payments", response_model=list[PaymentResponse])
def list_payments(auth=Depends(require_admin), service: PaymentService = Depends(get_payment_service)):
    return service.find_all()


@router.get("/payments/order/{order_id}", response_model=list[PaymentResponse])
def payments_for_order(
    order_id: str,
    claims: dict = Depends(verify_token),
    orders: OrderService = Depends(get_order_service),
    service: PaymentService = Depends(get_payment_service),
):
    owned_order(orders, order_id, claims)
    return service.find_by_order(order_id)


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: str,
    claims: dict = Depends(verify_token),
    service: PaymentService = Depends(get_payment_service),
):
    return _owned_payment(service, payment_id, claims)


@router.patch("/payments/{payment_id}", response_model=PaymentResponse)
def update_payment(
    payment_id: str,
    request: UpdatePaymentRequest,
    auth=Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    return service.update(payment_id, request.model_dump(exclude_unset=True))


@router.delete("/payments/{payment_id}")
def remove_payment(payment_id: str, auth=Depends(require_admin), service: PaymentService = Depends(get_payment_service)):
    service.remove(payment_id)
    return {"message": "Payment deleted"}
