from decimal import Decimal
from typing import Optional

import stripe
import structlog

from storefront.config import StripeConfig
from storefront.models import PaymentStatus
from storefront.providers import PaymentResult, PaymentStrategy, from_cents, to_cents

logger = structlog.get_logger(__name__)

# PaymentIntent.status -> (success, PaymentStatus)
INTENT_STATUSES = {
    "succeeded": (True, PaymentStatus.SUCCEEDED),
    "processing": (True, PaymentStatus.PROCESSING),
    "requires_action": (True, PaymentStatus.PENDING),
    "requires_confirmation": (True, PaymentStatus.PENDING),
    "requires_capture": (True, PaymentStatus.PROCESSING),
    "requires_payment_method": (False, PaymentStatus.FAILED),
    "canceled": (False, PaymentStatus.CANCELLED),
}


class StripePaymentStrategy(PaymentStrategy):
    def __init__(self, config: StripeConfig):
        self.config = config

    def create_payment(self, amount: Decimal, metadata: dict) -> PaymentResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_cents(amount),
                currency=self.config.currency,
                automatic_payment_methods={"enabled": True},
                metadata={k: str(v) for k, v in metadata.items()},
                idempotency_key=metadata.get("payment_id"),
                api_key=self.config.secret_key,
            )
        except Exception as exc:
            logger.error("stripe_create_failed", error=str(exc))
            return PaymentResult.failed(str(exc) or "Failed to create payment intent")

        return PaymentResult.ok(
            PaymentStatus.PENDING,
            payment_intent_id=intent.id,
            details={"client_secret": intent.client_secret},
        )

    def process_payment(self, payment_data: dict) -> PaymentResult:
        intent_id = payment_data.get("payment_intent_id")
        if not intent_id:
            return PaymentResult.failed("Missing Stripe payment intent ID")

        method = payment_data.get("payment_method_id")
        try:
            if method:
                intent = stripe.PaymentIntent.confirm(
                    intent_id, payment_method=method, api_key=self.config.secret_key
                )
            else:
                intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.config.secret_key)
        except Exception as exc:
            logger.error("stripe_process_failed", payment_intent_id=intent_id, error=str(exc))
            return PaymentResult.failed(str(exc) or "Failed to process payment")

        success, status = INTENT_STATUSES.get(intent.status, (False, PaymentStatus.FAILED))
        details = {"intent_status": intent.status}
        if method:
            details["payment_method"] = method
        if not success:
            error = getattr(intent, "last_payment_error", None)
            message = getattr(error, "message", None) if error else None
            return PaymentResult.failed(
                message or f"Payment intent is {intent.status}",
                status=status,
                payment_intent_id=intent.id,
                details=details,
            )
        return PaymentResult.ok(
            status,
            transaction_id=getattr(intent, "latest_charge", None),
            payment_intent_id=intent.id,
            details=details,
        )

    def refund_payment(self, transaction_id: str, amount: Optional[Decimal] = None) -> PaymentResult:
        params = {"api_key": self.config.secret_key}
        # charges (ch_/py_) and intents (pi_) are both refundable
        if transaction_id.startswith(("ch_", "py_")):
            params["charge"] = transaction_id
        else:
            params["payment_intent"] = transaction_id
        if amount is not None:
            params["amount"] = to_cents(amount)

        try:
            refund = stripe.Refund.create(**params)
        except Exception as exc:
            logger.error("stripe_refund_failed", transaction_id=transaction_id, error=str(exc))
            return PaymentResult.failed(str(exc) or "Failed to refund payment")

        return PaymentResult.ok(
            PaymentStatus.PARTIALLY_REFUNDED if amount is not None else PaymentStatus.REFUNDED,
            transaction_id=refund.id,
            details={
                "refund_id": refund.id,
                "refunded_amount": str(from_cents(refund.amount)),
                "reason": refund.reason,
                "status": refund.status,
            },
        )

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> bool:
        if not signature:
            logger.warning("stripe_webhook_missing_signature")
            return False
        try:
            stripe.Webhook.construct_event(payload, signature, self.config.webhook_secret)
        except Exception as exc:
            logger.warning("stripe_webhook_verification_failed", error=str(exc))
            return False
        return True
