from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

from storefront.config import Settings
from storefront.models import PaymentProvider, PaymentStatus


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of a provider call. Adapters return this instead of raising."""

    success: bool
    status: PaymentStatus
    transaction_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None

    @classmethod
    def ok(cls, status: PaymentStatus, **kwargs) -> "PaymentResult":
        return cls(success=True, status=status, **kwargs)

    @classmethod
    def failed(cls, error_message: str, status: PaymentStatus = PaymentStatus.FAILED, **kwargs) -> "PaymentResult":
        return cls(success=False, status=status, error_message=error_message, **kwargs)


class PaymentStrategy(ABC):
    """Uniform surface over one external payment network."""

    @abstractmethod
    def create_payment(self, amount: Decimal, metadata: dict[str, Any]) -> PaymentResult:
        """Start a payment; returns PENDING with client continuation data."""

    @abstractmethod
    def process_payment(self, payment_data: dict[str, Any]) -> PaymentResult:
        """Capture a client-confirmed payment."""

    @abstractmethod
    def refund_payment(self, transaction_id: str, amount: Optional[Decimal] = None) -> PaymentResult:
        """Refund fully, or partially when `amount` is given."""

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> bool:
        """True only for an authentic provider callback. Never raises."""


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def build_strategies(settings: Settings) -> dict[PaymentProvider, PaymentStrategy]:
    from storefront.paypal_service import PaypalPaymentStrategy
    from storefront.stripe_service import StripePaymentStrategy

    return {
        PaymentProvider.STRIPE: StripePaymentStrategy(settings.stripe),
        PaymentProvider.PAYPAL: PaypalPaymentStrategy(settings.paypal),
    }
