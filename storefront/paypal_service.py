import json
from decimal import Decimal
from typing import Optional

import paypalrestsdk
import structlog

from storefront.config import PayPalConfig
from storefront.models import PaymentStatus
from storefront.providers import PaymentResult, PaymentStrategy

logger = structlog.get_logger(__name__)

CAPTURE_STATUSES = {
    "COMPLETED": PaymentStatus.SUCCEEDED,
    "PENDING": PaymentStatus.PROCESSING,
}


def _money(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01")))


class PaypalPaymentStrategy(PaymentStrategy):
    """PayPal Orders v2 through the REST SDK's authenticated client."""

    def __init__(self, config: PayPalConfig):
        self.config = config
        self.api = paypalrestsdk.Api({
            "mode": config.mode,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        })

    def create_payment(self, amount: Decimal, metadata: dict) -> PaymentResult:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {"currency_code": self.config.currency, "value": _money(amount)},
                "description": metadata.get("description", "Order payment"),
                "custom_id": str(metadata.get("order_id")),
                "invoice_id": str(metadata.get("payment_id")),
            }],
        }
        try:
            order = self.api.post(
                "v2/checkout/orders", body, headers={"Prefer": "return=representation"}
            )
        except Exception as exc:
            logger.error("paypal_create_failed", error=str(exc))
            return PaymentResult.failed(str(exc) or "Failed to create PayPal order")

        approval_url = next(
            (link["href"] for link in order.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            "",
        )
        logger.info("paypal_order_created", paypal_order_id=order["id"])
        return PaymentResult.ok(
            PaymentStatus.PENDING,
            transaction_id=order["id"],
            details={"paypal_order_id": order["id"], "approval_url": approval_url},
        )

    def process_payment(self, payment_data: dict) -> PaymentResult:
        paypal_order_id = payment_data.get("paypal_order_id") or payment_data.get("transaction_id")
        if not paypal_order_id:
            return PaymentResult.failed("Missing PayPal order ID")

        try:
            response = self.api.post(f"v2/checkout/orders/{paypal_order_id}/capture", {})
        except Exception as exc:
            logger.error("paypal_capture_failed", paypal_order_id=paypal_order_id, error=str(exc))
            return PaymentResult.failed(str(exc) or "Failed to capture PayPal payment")

        captures = response.get("purchase_units", [{}])[0].get("payments", {}).get("captures", [])
        capture = captures[0] if captures else {}
        status = CAPTURE_STATUSES.get(capture.get("status"), PaymentStatus.FAILED)
        details = {"paypal_order_id": paypal_order_id, "capture_id": capture.get("id")}
        if status == PaymentStatus.FAILED:
            return PaymentResult.failed(
                f"PayPal capture status: {capture.get('status', 'unknown')}", details=details
            )
        logger.info("paypal_payment_captured", capture_id=capture.get("id"))
        return PaymentResult.ok(
            status,
            transaction_id=capture.get("id") or paypal_order_id,
            details=details,
        )

    def refund_payment(self, transaction_id: str, amount: Optional[Decimal] = None) -> PaymentResult:
        body = {}
        if amount is not None:
            body["amount"] = {"currency_code": self.config.currency, "value": _money(amount)}

        try:
            refund = self.api.post(f"v2/payments/captures/{transaction_id}/refund", body)
        except Exception as exc:
            logger.error("paypal_refund_failed", capture_id=transaction_id, error=str(exc))
            return PaymentResult.failed(str(exc) or "Failed to refund PayPal payment")

        logger.info("paypal_refund_processed", refund_id=refund.get("id"))
        return PaymentResult.ok(
            PaymentStatus.PARTIALLY_REFUNDED if amount is not None else PaymentStatus.REFUNDED,
            transaction_id=refund.get("id"),
            details={
                "refund_id": refund.get("id"),
                "refunded_amount": _money(amount) if amount is not None else "full",
                "status": refund.get("status"),
            },
        )

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> bool:
        """Check the transmission headers against PayPal's signing certificate.

        `signature` is the JSON-encoded bundle of PAYPAL-* transmission headers.
        """
        if not self.config.webhook_id:
            logger.warning("paypal_webhook_id_not_configured")
            return False
        try:
            headers = json.loads(signature or "{}")
            body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            # header sends "SHA256withRSA", OpenSSL wants the digest name
            algo = (headers.get("auth_algo") or "sha256").replace("withRSA", "").lower()
            return bool(paypalrestsdk.WebhookEvent.verify(
                headers["transmission_id"],
                headers["transmission_time"],
                self.config.webhook_id,
                body,
                headers["cert_url"],
                headers["transmission_sig"],
                algo,
            ))
        except Exception as exc:
            logger.warning("paypal_webhook_verification_failed", error=str(exc))
            return False
