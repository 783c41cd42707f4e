"""
Payment reconciliation.

Every operation here is a two-step saga run under the booking's lock:

    1. write the Payment (conditional on its version)
    2. bring the Booking in line through BookingStateMachine.sync_payment_status

Step 1 always comes first. A crash after it leaves "payment settled, booking
not yet updated", which the next delivery of the same call (or reconcile())
completes: step 1 notices it was already applied and only step 2 runs.
"""
import logging
from typing import Optional

from booking_errors import (
    DuplicatePayment,
    PaymentAlreadySettled,
    PaymentNotSettled,
    ValidationError,
)
from booking_schemas import Booking, BookingStatus, GatewayOutcome, Payment, PaymentStatus
from notifications.events import PaymentRefunded, PaymentSettled
from notifications.publisher import safe_publish
from txn_manager import new_id, new_refund_id

logger = logging.getLogger(__name__)

P = PaymentStatus

PAYMENT_TRANSITIONS = {
    P.PENDING: frozenset({P.PROCESSING, P.COMPLETED, P.FAILED}),
    P.PROCESSING: frozenset({P.COMPLETED, P.FAILED}),
    P.COMPLETED: frozenset({P.REFUNDED}),
    P.FAILED: frozenset(),
    P.REFUNDED: frozenset(),
}

_OUTCOME_STATUS = {
    GatewayOutcome.SUCCEEDED: P.COMPLETED,
    GatewayOutcome.FAILED: P.FAILED,
}


class PaymentReconciliationService:
    def __init__(self, bookings, payments, state_machine, publisher, tm):
        self.bookings = bookings
        self.payments = payments
        self.state_machine = state_machine
        self.publisher = publisher
        self.tm = tm

    # -- creation ---------------------------------------------------------

    def record_payment_created(self, booking_id: str, amount: int, currency: str, provider: Optional[str] = None) -> Payment:
        with self.tm.locked(booking_id):
            # cancel_booking holds the same lock
            booking = self.bookings.get(booking_id)
            if booking.status != BookingStatus.PENDING_PAYMENT:
                raise ValidationError(f"Booking {booking_id} is {booking.status.value}; it takes no new payment")
            if amount != booking.price.total or currency.upper() != booking.currency.upper():
                raise ValidationError(
                    f"Payment of {amount} {currency} does not match booking total "
                    f"{booking.price.total} {booking.currency}"
                )

            existing = self.payments.get_by_booking_id(booking_id)
            if existing is not None and existing.status != P.FAILED:
                raise DuplicatePayment(booking_id)

            payment = Payment(
                id=new_id(),
                booking_id=booking_id,
                user_id=booking.user_id,
                amount=amount,
                currency=booking.currency,
                gateway_provider=provider,
            )

            def create():
                try:
                    return self.payments.create(payment)
                except DuplicatePayment:
                    # a retried create whose first attempt did land
                    live = self.payments.get_by_booking_id(booking_id)
                    if live is not None and live.id == payment.id:
                        return live
                    raise

            stored = self.tm.step(f"create payment for booking {booking_id}", create)
            logger.info(f"Payment {stored.id} created for booking {booking_id}: {amount} {stored.currency}")
            self._converge_booking(stored)
        return stored

    def attach_gateway_order(self, payment_id: str, gateway_order_id: str) -> Payment:
        """The gateway accepted an order for this payment: pending -> processing."""
        payment = self.payments.get(payment_id)
        with self.tm.locked(payment.booking_id):

            def attach():
                current = self.payments.get(payment_id)
                if current.status == P.PROCESSING and current.gateway_order_id == gateway_order_id:
                    return current
                if current.status not in (P.PENDING, P.PROCESSING):
                    raise PaymentAlreadySettled(f"Payment {payment_id} is already {current.status.value}")
                patch = {"status": P.PROCESSING, "gateway_order_id": gateway_order_id}
                return self.payments.update(payment_id, patch, current.version)

            stored = self.tm.step(f"attach gateway order to payment {payment_id}", attach)
            self._converge_booking(stored)
        return stored

    # -- settlement -------------------------------------------------------

    def apply_gateway_result(
        self,
        payment_id: str,
        outcome: GatewayOutcome,
        gateway_payment_id: Optional[str] = None,
        gateway_signature: Optional[str] = None,
        method: Optional[str] = None,
        note: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
    ) -> Payment:
        """
        Apply a gateway (or admin) verdict. Redelivering an outcome that was
        already applied is a no-op apart from finishing the booking side; a
        conflicting outcome for a settled payment raises PaymentAlreadySettled.
        """
        outcome = GatewayOutcome(outcome)
        target = _OUTCOME_STATUS[outcome]
        payment = self.payments.get(payment_id)

        with self.tm.locked(payment.booking_id):

            def settle():
                current = self.payments.get(payment_id)
                if current.status == target or (target == P.COMPLETED and current.status == P.REFUNDED):
                    logger.info(f"Payment {payment_id}: {outcome.value} already applied")
                    return current
                if target not in PAYMENT_TRANSITIONS[current.status]:
                    raise PaymentAlreadySettled(
                        f"Payment {payment_id} is {current.status.value}; refusing outcome {outcome.value}"
                    )
                patch = {"status": target}
                if gateway_order_id:
                    patch["gateway_order_id"] = gateway_order_id
                if gateway_payment_id:
                    patch["gateway_payment_id"] = gateway_payment_id
                if gateway_signature:
                    patch["gateway_signature"] = gateway_signature
                if method:
                    patch["method"] = method
                if target == P.FAILED:
                    patch["failure_reason"] = note
                stored = self.payments.update(payment_id, patch, current.version)
                logger.info(f"Payment {payment_id}: {current.status.value} -> {stored.status.value}")
                return stored

            stored = self.tm.step(f"settle payment {payment_id} as {outcome.value}", settle)
            if note is None and stored.status == P.COMPLETED:
                note = f"Payment confirmed via {stored.gateway_provider or 'gateway'} (ID: {stored.gateway_payment_id or stored.id})"
            self._converge_booking(stored, note)
        return stored

    def resolve_payment(self, payment_id: str, outcome: GatewayOutcome, note: str) -> Payment:
        """Admin verdict for a payment whose gateway outcome never arrived."""
        logger.warning(f"Payment {payment_id} resolved by admin as {GatewayOutcome(outcome).value}: {note}")
        return self.apply_gateway_result(payment_id, outcome, note=f"Resolved by admin: {note}")

    # -- refunds ----------------------------------------------------------

    def initiate_refund(self, payment_id: str, reason: Optional[str] = None, refund_id: Optional[str] = None) -> Payment:
        """
        Full refund of a completed payment. The booking's payment_status follows;
        its status does not (cancelling is a separate, explicit decision).
        """
        payment = self.payments.get(payment_id)
        refund_id = refund_id or new_refund_id()

        with self.tm.locked(payment.booking_id):

            def refund():
                current = self.payments.get(payment_id)
                if current.status == P.REFUNDED:
                    return current, False
                if current.status in (P.PENDING, P.PROCESSING):
                    raise PaymentNotSettled(f"Payment {payment_id} is {current.status.value}; nothing to refund")
                if current.status == P.FAILED:
                    raise PaymentAlreadySettled(f"Payment {payment_id} failed; nothing to refund")
                patch = {
                    "status": P.REFUNDED,
                    "refund_id": refund_id,
                    "refund_amount": current.amount,
                    "refund_reason": reason,
                }
                return self.payments.update(payment_id, patch, current.version), True

            stored, refunded_now = self.tm.step(f"refund payment {payment_id}", refund)
            if refunded_now:
                logger.info(f"Payment {payment_id} refunded ({stored.refund_id}, {stored.refund_amount} {stored.currency})")
            else:
                booking = self.bookings.get(stored.booking_id)
                if booking.payment_status == P.REFUNDED:
                    raise PaymentAlreadySettled(f"Payment {payment_id} was already refunded ({stored.refund_id})")
                logger.warning(f"Payment {payment_id} already refunded; finishing booking {stored.booking_id}")
            self._converge_booking(stored)
        return stored

    # -- repair -----------------------------------------------------------

    def reconcile(self, booking_id: str) -> Booking:
        """Re-derive the booking's payment side from its live payment."""
        with self.tm.locked(booking_id):
            payment = self.payments.get_by_booking_id(booking_id)
            if payment is None:
                return self.bookings.get(booking_id)
            return self._converge_booking(payment)

    def _converge_booking(self, payment: Payment, note: Optional[str] = None) -> Booking:
        live = self.payments.get_by_booking_id(payment.booking_id)
        if live is None or live.id != payment.id:
            logger.info(f"Payment {payment.id} is superseded; booking {payment.booking_id} left as is")
            return self.bookings.get(payment.booking_id)

        booking, changed = self.state_machine.sync_payment_status(payment.booking_id, payment.status, note)
        if not changed:
            return booking

        if payment.status in (P.COMPLETED, P.FAILED):
            outcome = GatewayOutcome.SUCCEEDED if payment.status == P.COMPLETED else GatewayOutcome.FAILED
            safe_publish(self.publisher, PaymentSettled(
                booking_id=payment.booking_id,
                payment_id=payment.id,
                outcome=outcome,
                amount=payment.amount,
                currency=payment.currency,
            ))
        elif payment.status == P.REFUNDED:
            safe_publish(self.publisher, PaymentRefunded(
                booking_id=payment.booking_id,
                payment_id=payment.id,
                refund_id=payment.refund_id,
                refund_amount=payment.refund_amount,
                reason=payment.refund_reason,
            ))
        return booking
