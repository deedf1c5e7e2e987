"""Payment orchestration.

`PaymentService` is the single entry point for starting, finalizing and
refunding payments and for applying provider webhooks. Payment rows are only
written through `_transition`, a compare-and-set on the current status, so the
client finalize path and the webhook path can't overwrite each other's
terminal state.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import structlog
from sqlalchemy import exists, select, update
from sqlalchemy.orm import Session, aliased

from storefront.errors import (
    InvalidSignatureError,
    InvalidStatusTransitionError,
    NotFoundError,
    UnsupportedProviderError,
    ValidationError,
)
from storefront.models import Payment, PaymentProvider, PaymentStatus
from storefront.orders import OrderService
from storefront.providers import PaymentStrategy, from_cents

logger = structlog.get_logger(__name__)

FINALIZABLE = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED})
FAILABLE = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})
REFUNDABLE = frozenset({PaymentStatus.SUCCEEDED})
SETTLED = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED})

ADMIN_FIELDS = ("status", "transaction_id", "payment_intent_id", "payment_details", "error_message")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))



def _mapping(value) -> dict:
    """Nested webhook object, or {} when absent. Anything else is a malformed payload."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError("Invalid payload")
    return value


def _links(resource: dict) -> list[dict]:
    links = resource.get("links") or []
    if not isinstance(links, list):
        raise ValidationError("Invalid payload")
    return [_mapping(link) for link in links]


def _amount(value) -> Decimal:
    if isinstance(value, (dict, list, bool)):
        raise ValidationError("Invalid payload")
    try:
        amount = _decimal(value)
    except InvalidOperation:
        raise ValidationError("Invalid payload")
    if not amount.is_finite():
        raise ValidationError("Invalid payload")
    return amount


class PaymentService:
    def __init__(
        self,
        db: Session,
        order_service: OrderService,
        strategies: dict[PaymentProvider, PaymentStrategy],
    ):
        self.db = db
        self.orders = order_service
        self.strategies = strategies

    # -- lookups ---------------------------------------------------------

    def find_all(self) -> list[Payment]:
        return list(self.db.scalars(select(Payment).order_by(Payment.created_at.desc())))

    def find_by_order(self, order_id: str) -> list[Payment]:
        self.orders.find_one(order_id)
        stmt = select(Payment).where(Payment.order_id == order_id).order_by(Payment.created_at.desc())
        return list(self.db.scalars(stmt))

    def find_one(self, payment_id: str) -> Payment:
        payment = self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    def _strategy(self, provider) -> PaymentStrategy:
        try:
            provider = PaymentProvider(provider)
        except ValueError:
            raise UnsupportedProviderError(provider)
        strategy = self.strategies.get(provider)
        if strategy is None:
            raise UnsupportedProviderError(provider)
        return strategy

    # -- client driven flow ----------------------------------------------

    def create(
        self,
        order_id: str,
        amount,
        provider,
        payment_details: Optional[dict[str, Any]] = None,
    ) -> Payment:
        order = self.orders.find_one(order_id)
        amount = _decimal(amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be positive")
        if amount != order.total:
            raise ValidationError(
                f"Payment amount ({amount}) does not match order total ({order.total})"
            )
        strategy = self._strategy(provider)

        already_paid = self.db.scalar(select(exists().where(
            Payment.order_id == order.id, Payment.status.in_(list(SETTLED))
        )))
        if already_paid:
            raise ValidationError(f"Order {order.id} has already been paid")

        payment = Payment(
            order_id=order.id,
            amount=amount,
            provider=PaymentProvider(provider),
            status=PaymentStatus.PENDING,
            payment_details=dict(payment_details or {}),
        )
        self.db.add(payment)
        self.db.commit()
        self.db.refresh(payment)

        result = strategy.create_payment(
            amount,
            {"order_id": order.id, "payment_id": payment.id, **(payment_details or {})},
        )

        payment.status = result.status
        payment.transaction_id = result.transaction_id
        payment.payment_intent_id = result.payment_intent_id
        payment.payment_details = {**(payment.payment_details or {}), **result.details}
        payment.error_message = result.error_message
        self.db.commit()
        self.db.refresh(payment)

        logger.info(
            "payment_created",
            payment_id=payment.id,
            order_id=order.id,
            provider=payment.provider.value,
            status=payment.status.value,
        )
        return payment

    def finalize(self, payment_id: str, provider_payload: Optional[dict[str, Any]] = None) -> Payment:
        payment = self.find_one(payment_id)
        if payment.status not in FINALIZABLE:
            raise ValidationError(f"Payment is {payment.status.value} and cannot be finalized")
        strategy = self._strategy(payment.provider)

        result = strategy.process_payment({
            "transaction_id": payment.transaction_id,
            **(provider_payload or {}),
            "payment_intent_id": payment.payment_intent_id,
        })

        settles = result.success and result.status == PaymentStatus.SUCCEEDED
        guard = (~self._settled_elsewhere(payment),) if settles else ()
        won = self._transition(
            payment,
            FINALIZABLE,
            *guard,
            status=result.status,
            transaction_id=result.transaction_id or payment.transaction_id,
            payment_details={**(payment.payment_details or {}), **result.details},
            error_message=result.error_message,
        )
        if won and settles:
            self._sync_order(payment, paid=True)
        elif settles and payment.status in FINALIZABLE:
            self._flag_duplicate_charge(payment, result.transaction_id)
        return payment

    def refund(self, payment_id: str, amount=None) -> Payment:
        payment = self.find_one(payment_id)
        if payment.status not in REFUNDABLE:
            raise ValidationError("Only successful payments can be refunded")

        if amount is not None:
            amount = _decimal(amount)
            if amount <= 0:
                raise ValidationError("Refund amount must be positive")
            if amount > payment.amount:
                raise ValidationError(
                    f"Refund amount ({amount}) exceeds payment amount ({payment.amount})"
                )
            if amount == payment.amount:
                amount = None

        strategy = self._strategy(payment.provider)
        reference = payment.transaction_id or payment.payment_intent_id
        if not reference:
            raise ValidationError("Payment has no provider transaction to refund")

        result = strategy.refund_payment(reference, amount)
        details = dict(payment.payment_details or {})
        details["refund"] = dict(result.details)

        if not result.success:
            logger.error("payment_refund_failed", payment_id=payment.id, error=result.error_message)
            self._transition(payment, REFUNDABLE, payment_details=details, error_message=result.error_message)
            return payment

        if result.transaction_id:
            details["refund_ids"] = [*details.get("refund_ids", []), result.transaction_id]
        refunded = payment.amount if amount is None else (payment.refunded_amount or Decimal("0")) + amount
        details["refunded_amount"] = str(refunded)

        won = self._transition(
            payment,
            REFUNDABLE,
            status=result.status,
            refunded_amount=refunded,
            payment_details=details,
            error_message=None,
        )
        if won and result.status == PaymentStatus.REFUNDED:
            self._sync_order(payment, status="REFUNDED")
        logger.info("payment_refunded", payment_id=payment.id, status=payment.status.value,
                    refunded_amount=str(payment.refunded_amount))
        return payment

    # -- webhooks --------------------------------------------------------

    def process_webhook(self, provider, raw_payload: bytes, signature: Optional[str]) -> dict:
        strategy = self._strategy(provider)
        provider = PaymentProvider(provider)

        if not strategy.verify_webhook(raw_payload, signature):
            logger.warning("webhook_signature_invalid", provider=provider.value)
            raise InvalidSignatureError()

        try:
            event = json.loads(raw_payload)
        except (TypeError, ValueError):
            raise ValidationError("Invalid payload")
        if not isinstance(event, dict):
            raise ValidationError("Invalid payload")

        if provider == PaymentProvider.STRIPE:
            return self._process_stripe_event(event)
        if provider == PaymentProvider.PAYPAL:
            return self._process_paypal_event(event)
        raise UnsupportedProviderError(provider)

    def _process_stripe_event(self, event: dict) -> dict:
        event_type = event.get("type")
        obj = _mapping(_mapping(event.get("data")).get("object"))

        if event_type == "payment_intent.succeeded":
            payment = self._find_for_webhook(Payment.payment_intent_id == obj.get("id"), obj.get("id"))
            charges = _mapping(obj.get("charges")).get("data") or [None]
            if not isinstance(charges, list):
                raise ValidationError("Invalid payload")
            self._settle(payment, obj.get("latest_charge") or _mapping(charges[0]).get("id"))
            return {"success": True, "message": "Payment succeeded event processed"}

        if event_type == "payment_intent.payment_failed":
            payment = self._find_for_webhook(Payment.payment_intent_id == obj.get("id"), obj.get("id"))
            error = _mapping(obj.get("last_payment_error")).get("message")
            self._fail(payment, error or "Payment failed")
            return {"success": True, "message": "Payment failed event processed"}

        if event_type == "charge.refunded":
            condition = Payment.transaction_id == obj.get("id")
            if obj.get("payment_intent"):
                condition = condition | (Payment.payment_intent_id == obj["payment_intent"])
            payment = self._find_for_webhook(condition, obj.get("id"))
            self._apply_refund(payment, total=from_cents(_amount(obj.get("amount_refunded") or 0)))
            return {"success": True, "message": "Refund event processed"}

        logger.info("webhook_unhandled_event", provider="stripe", event_type=event_type)
        return {"success": True, "message": f"Unhandled event type: {event_type}"}

    def _process_paypal_event(self, event: dict) -> dict:
        event_type = event.get("event_type")
        resource = _mapping(event.get("resource"))

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            payment = self._latest_paypal_payment(resource.get("custom_id"))
            self._settle(payment, resource.get("id"))
            return {"success": True, "message": "Payment completed event processed"}

        if event_type in ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"):
            payment = self._latest_paypal_payment(resource.get("custom_id"))
            reason = _mapping(resource.get("status_details")).get("reason")
            self._fail(payment, reason or "Payment failed")
            return {"success": True, "message": "Payment failed event processed"}

        if event_type == "PAYMENT.CAPTURE.REFUNDED":
            capture_id = next(
                (str(link["href"]).rstrip("/").split("/")[-1]
                 for link in _links(resource) if link.get("rel") == "up" and link.get("href")),
                None,
            )
            if not capture_id:
                logger.info("webhook_capture_id_missing", provider="paypal", refund_id=resource.get("id"))
                return {"success": True, "message": "Refund event processed"}
            payment = self._find_for_webhook(Payment.transaction_id == capture_id, capture_id)
            value = _mapping(resource.get("amount")).get("value", "0")
            self._apply_refund(payment, increment=_amount(value), refund_id=resource.get("id"))
            return {"success": True, "message": "Refund event processed"}

        logger.info("webhook_unhandled_event", provider="paypal", event_type=event_type)
        return {"success": True, "message": f"Unhandled event type: {event_type}"}

    def _find_for_webhook(self, condition, reference) -> Optional[Payment]:
        if not reference:
            return None
        payment = self.db.scalar(select(Payment).where(condition).limit(1))
        if payment is None:
            logger.info("payment_not_found_for_webhook", reference=reference)
        return payment

    def _latest_paypal_payment(self, order_id) -> Optional[Payment]:
        if not order_id:
            return None
        payment = self.db.scalar(
            select(Payment)
            .where(Payment.order_id == order_id, Payment.provider == PaymentProvider.PAYPAL)
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        if payment is None:
            logger.info("payment_not_found_for_webhook", order_id=order_id)
        return payment

    def _settle(self, payment: Optional[Payment], transaction_id: Optional[str]) -> None:
        if payment is None:
            return
        if payment.status not in FINALIZABLE:
            logger.info("webhook_duplicate_ignored", payment_id=payment.id, status=payment.status.value)
            return
        won = self._transition(
            payment,
            FINALIZABLE,
            ~self._settled_elsewhere(payment),
            status=PaymentStatus.SUCCEEDED,
            transaction_id=transaction_id or payment.transaction_id,
            error_message=None,
        )
        if won:
            self._sync_order(payment, paid=True)
        elif payment.status in FINALIZABLE:
            self._flag_duplicate_charge(payment, transaction_id)

    def _settled_elsewhere(self, payment: Payment):
        """EXISTS clause for another SUCCEEDED or PARTIALLY_REFUNDED payment on the same order."""
        other = aliased(Payment)
        return exists().where(
            other.order_id == payment.order_id,
            other.id != payment.id,
            other.status.in_(list(SETTLED)),
        )

    def _flag_duplicate_charge(self, payment: Payment, transaction_id: Optional[str]) -> None:
        if not self.db.scalar(select(self._settled_elsewhere(payment))):
            return
        # captured at the provider while another payment already settled the order
        logger.error(
            "payment_duplicate_charge",
            payment_id=payment.id,
            order_id=payment.order_id,
            transaction_id=transaction_id,
        )
        self._transition(
            payment,
            {payment.status},
            transaction_id=transaction_id or payment.transaction_id,
            payment_details={**(payment.payment_details or {}), "duplicate_charge": True},
            error_message="Duplicate charge: order already settled by another payment, refund required",
        )

    def _fail(self, payment: Optional[Payment], message: str) -> None:
        if payment is None:
            return
        if payment.status not in FAILABLE:
            logger.info("webhook_duplicate_ignored", payment_id=payment.id, status=payment.status.value)
            return
        self._transition(payment, FAILABLE, status=PaymentStatus.FAILED, error_message=message)

    def _apply_refund(
        self,
        payment: Optional[Payment],
        total: Optional[Decimal] = None,
        increment: Optional[Decimal] = None,
        refund_id: Optional[str] = None,
    ) -> None:
        """Record a provider-side refund.

        Stripe reports the cumulative refunded `total`; PayPal reports each
        refund as an `increment` with its own id. Either way a redelivered
        event leaves the record untouched.
        """
        if payment is None:
            return
        if payment.status not in SETTLED:
            logger.info("webhook_duplicate_ignored", payment_id=payment.id, status=payment.status.value)
            return

        details = dict(payment.payment_details or {})
        refund_ids = list(details.get("refund_ids", []))
        current = payment.refunded_amount or Decimal("0")
        if refund_id and refund_id in refund_ids:
            logger.info("webhook_duplicate_ignored", payment_id=payment.id, refund_id=refund_id)
            return
        if total is None:
            total = current + increment
        if total <= current:
            logger.info("webhook_duplicate_ignored", payment_id=payment.id, refunded_amount=str(current))
            return

        status = PaymentStatus.REFUNDED if total >= payment.amount else PaymentStatus.PARTIALLY_REFUNDED
        if refund_id:
            refund_ids.append(refund_id)
        details.update(refunded=True, refunded_amount=str(total), refund_ids=refund_ids)

        won = self._transition(
            payment,
            {payment.status},
            Payment.refunded_amount == current,
            status=status,
            refunded_amount=total,
            payment_details=details,
        )
        if won and status == PaymentStatus.REFUNDED:
            self._sync_order(payment, status="REFUNDED")

    # -- writes ----------------------------------------------------------

    def _transition(self, payment: Payment, expected, *conditions, **values) -> bool:
        """Apply `values` only if the row still has one of the `expected` statuses."""
        target = values.get("status")
        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status.in_(list(expected)), *conditions)
            .values(updated_at=_now(), **values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(payment)
        if result.rowcount != 1:
            logger.warning(
                "payment_transition_lost",
                payment_id=payment.id,
                status=payment.status.value,
                wanted=getattr(target, "value", target),
            )
            return False
        if target is not None:
            logger.info("payment_status_changed", payment_id=payment.id, status=payment.status.value)
        return True

    def _sync_order(self, payment: Payment, status: Optional[str] = None, paid: bool = False) -> None:
        try:
            if paid:
                self.orders.update_payment_status(payment.order_id, True, payment_id=payment.id)
            else:
                self.orders.update_order_status(payment.order_id, status)
        except InvalidStatusTransitionError as exc:
            # the payment state is already recorded; the order keeps its own
            logger.warning(
                "order_status_not_synchronized",
                order_id=payment.order_id,
                payment_id=payment.id,
                error=str(exc),
            )

    # -- administration --------------------------------------------------

    def update(self, payment_id: str, changes: dict[str, Any]) -> Payment:
        payment = self.find_one(payment_id)
        for key in ADMIN_FIELDS:
            if key in changes and changes[key] is not None:
                setattr(payment, key, changes[key])
        self.db.commit()
        self.db.refresh(payment)
        logger.info("payment_updated", payment_id=payment.id, fields=sorted(changes))
        return payment

    def remove(self, payment_id: str) -> None:
        payment = self.find_one(payment_id)
        self.db.delete(payment)
        self.db.commit()
        logger.info("payment_removed", payment_id=payment_id)
