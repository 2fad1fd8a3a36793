"""
Payment gateway contract consumed by checkout, and its Stripe implementation.
"""
import json
import logging
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import stripe

from storefront.config import Config
from storefront.models import ChargeResult, RefundResult
from storefront.exceptions import PaymentFailed, ValidationError

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to integer cents"""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


# Oldest webhook timestamp accepted, in seconds
WEBHOOK_TOLERANCE_SECONDS = 300


def parse_webhook_event(payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
    """
    Verify a Stripe webhook signature and decode the event.

    Raises:
        ValidationError: If the signature does not match or the body is not
            a JSON event
    """
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"), signature, secret, WEBHOOK_TOLERANCE_SECONDS
        )
        event = json.loads(payload)
    except stripe.SignatureVerificationError as e:
        logger.warning("Rejected webhook: %s", e)
        raise ValidationError("Invalid webhook signature")
    except ValueError as e:
        raise ValidationError(f"Invalid webhook payload: {e}")

    if not isinstance(event, dict) or "type" not in event:
        raise ValidationError("Invalid webhook payload: not an event")
    return event


def refund_ids_of(charge: Dict[str, Any]) -> List[str]:
    """Refund ids listed on a charge object, when the event includes them"""
    refunds = charge.get("refunds") or {}
    return [refund["id"] for refund in refunds.get("data", [])]


class PaymentGateway(ABC):
    """
    What the order core needs from a payment processor.

    Implementations raise PaymentFailed for every gateway error (decline,
    network, timeout); nothing is swallowed.
    """

    @abstractmethod
    def charge_and_confirm(
        self,
        amount: Decimal,
        currency: str,
        payment_method_ref: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> ChargeResult: ...

    @abstractmethod
    def refund(
        self,
        charge_id: str,
        amount: Optional[Decimal] = None,
        idempotency_key: Optional[str] = None
    ) -> RefundResult: ...


class StripeGateway(PaymentGateway):
    """Payment gateway backed by Stripe PaymentIntents"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or Config.STRIPE_SECRET_KEY

    def charge_and_confirm(
        self,
        amount: Decimal,
        currency: str,
        payment_method_ref: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> ChargeResult:
        """
        Create and confirm a PaymentIntent in one call.

        The idempotency key makes a retried call return the original intent
        instead of charging twice.
        """
        if not self.api_key:
            raise PaymentFailed("Payment processing is not configured", code="not_configured")

        try:
            intent = stripe.PaymentIntent.create(
                amount=to_minor_units(amount),
                currency=currency,
                payment_method=payment_method_ref,
                confirmation_method="manual",
                confirm=True,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
                api_key=self.api_key
            )
        except stripe.CardError as e:
            logger.info("Card declined: %s", e.code)
            raise PaymentFailed(e.user_message or "Card declined", code=e.code)
        except stripe.StripeError as e:
            logger.error("Stripe payment intent creation error: %s", e)
            raise PaymentFailed("Payment processing failed", code=getattr(e, "code", None))

        if intent.status != "succeeded":
            # requires_action and friends cannot complete synchronously
            raise PaymentFailed(f"Payment not completed: {intent.status}", code=intent.status)

        return ChargeResult(
            charge_id=intent.id,
            status=intent.status,
            amount=amount,
            currency=currency
        )

    def refund(
        self,
        charge_id: str,
        amount: Optional[Decimal] = None,
        idempotency_key: Optional[str] = None
    ) -> RefundResult:
        """Refund a payment intent, fully or by `amount`"""
        if not self.api_key:
            raise PaymentFailed("Payment processing is not configured", code="not_configured")

        params = {"payment_intent": charge_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)

        try:
            refund = stripe.Refund.create(
                **params,
                idempotency_key=idempotency_key,
                api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error("Stripe refund creation error: %s", e)
            raise PaymentFailed("Refund processing failed", code=getattr(e, "code", None))

        if refund.status in ("failed", "canceled"):
            raise PaymentFailed(f"Refund {refund.status}", code=refund.status)

        return RefundResult(
            refund_id=refund.id,
            status=refund.status,
            amount=from_minor_units(refund.amount) if refund.amount is not None else amount
        )
