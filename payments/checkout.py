"""
Payment gateway adapters.

StripeCheckout opens PaymentIntents and issues refunds on Stripe and records
what Stripe said through the reconciliation service. A connection failure is
an unknown outcome: it raises GatewayTimeout and leaves the payment as it is;
the webhook (or an admin resolution) settles it later.
"""
import hashlib
import hmac
import logging
from typing import Optional, Tuple

import stripe

from booking_errors import GatewayTimeout, InvalidSignature
from booking_schemas import GatewayOutcome, GatewayResult, Payment, PaymentStatus

logger = logging.getLogger(__name__)

STRIPE_EVENT_OUTCOMES = {
    "payment_intent.succeeded": GatewayOutcome.SUCCEEDED,
    "payment_intent.payment_failed": GatewayOutcome.FAILED,
}


class StripeCheckout:
    def __init__(self, reconciliation, api_key: Optional[str] = None):
        self.reconciliation = reconciliation
        self.api_key = api_key

    def start_payment(self, payment: Payment) -> Tuple[Payment, str]:
        """
        Create a PaymentIntent for payment and move it to processing.
        Returns the updated payment and the client secret for the app's SDK.
        """
        try:
            intent = stripe.PaymentIntent.create(
                amount=payment.amount,  # Stripe expects minor units
                currency=payment.currency.lower(),
                metadata={"payment_id": payment.id, "booking_id": payment.booking_id},
                idempotency_key=f"intent-{payment.id}",
                api_key=self.api_key,
            )
        except stripe.APIConnectionError as e:
            logger.warning(f"Stripe unreachable while opening payment {payment.id}: {e}")
            raise GatewayTimeout(f"Stripe did not answer for payment {payment.id}") from e

        updated = self.reconciliation.attach_gateway_order(payment.id, intent["id"])
        return updated, intent["client_secret"]

    def issue_refund(self, payment_id: str, reason: Optional[str] = None) -> Payment:
        current = self.reconciliation.payments.get(payment_id)
        if current.status != PaymentStatus.COMPLETED:
            # raises for unsettled payments, finishes a half-applied refund
            return self.reconciliation.initiate_refund(payment_id, reason)

        try:
            refund = stripe.Refund.create(
                payment_intent=current.gateway_order_id or current.gateway_payment_id,
                idempotency_key=f"refund-{payment_id}",
                api_key=self.api_key,
            )
        except stripe.APIConnectionError as e:
            logger.warning(f"Stripe unreachable while refunding payment {payment_id}: {e}")
            raise GatewayTimeout(f"Stripe did not answer the refund of payment {payment_id}") from e

        return self.reconciliation.initiate_refund(payment_id, reason, refund_id=refund["id"])


def result_from_event(event: dict, signature: Optional[str] = None) -> Optional[GatewayResult]:
    """Translate a Stripe event into a gateway result; None for events we ignore."""
    outcome = STRIPE_EVENT_OUTCOMES.get(event.get("type"))
    if outcome is None:
        return None

    intent = event["data"]["object"]
    payment_id = (intent.get("metadata") or {}).get("payment_id")
    if not payment_id:
        logger.warning(f"Stripe event {event.get('id')} carries no payment_id metadata")
        return None

    method_types = intent.get("payment_method_types") or [None]
    return GatewayResult(
        payment_id=payment_id,
        outcome=outcome,
        gateway_order_id=intent["id"],
        gateway_payment_id=intent.get("latest_charge") or intent["id"],
        gateway_signature=signature,
        method=method_types[0],
    )


def gateway_signature(order_id: str, payment_id: str, secret: str) -> str:
    """HMAC-SHA256 over "order_id|payment_id", hex encoded."""
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_gateway_signature(order_id: str, payment_id: str, signature: Optional[str], secret: str):
    expected = gateway_signature(order_id or "", payment_id or "", secret)
    if not signature or not hmac.compare_digest(expected, signature):
        raise InvalidSignature(f"Bad gateway signature for order {order_id}")
