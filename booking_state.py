"""
Booking lifecycle.

    pending_payment -> processing -> documents_verified -> visa_submitted
        -> visa_approved -> ready_to_fly -> completed

cancelled is reachable from every non-terminal status. completed and
cancelled are terminal. Moving to completed also needs a completed payment.

transition() is the only function that changes Booking.status; every call
appends one status_history entry. BookingStateMachine persists transitions
and is the only writer of Booking.status and Booking.payment_status.
"""
import logging
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from booking_errors import InvalidTransition, PaymentNotSettled
from booking_schemas import (
    Booking,
    BookingStatus,
    LegacyStatus,
    PaymentStatus,
    StatusHistoryEntry,
    utcnow,
)
from notifications.events import BookingStatusChanged
from notifications.publisher import safe_publish

logger = logging.getLogger(__name__)

S = BookingStatus

TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    S.PENDING_PAYMENT: frozenset({S.PROCESSING, S.CANCELLED}),
    S.PROCESSING: frozenset({S.DOCUMENTS_VERIFIED, S.CANCELLED}),
    S.DOCUMENTS_VERIFIED: frozenset({S.VISA_SUBMITTED, S.CANCELLED}),
    S.VISA_SUBMITTED: frozenset({S.VISA_APPROVED, S.CANCELLED}),
    S.VISA_APPROVED: frozenset({S.READY_TO_FLY, S.CANCELLED}),
    S.READY_TO_FLY: frozenset({S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL = frozenset(s for s, targets in TRANSITIONS.items() if not targets)


def allowed_targets(status: BookingStatus) -> FrozenSet[BookingStatus]:
    return TRANSITIONS[BookingStatus(status)]


def can_transition(from_status: BookingStatus, to_status: BookingStatus) -> bool:
    return BookingStatus(to_status) in allowed_targets(from_status)


def initial_history(note: str = "Booking created - awaiting payment", at: datetime = None) -> List[StatusHistoryEntry]:
    return [StatusHistoryEntry(status=S.PENDING_PAYMENT, at=at or utcnow(), note=note)]


def transition(booking: Booking, target: BookingStatus, note: Optional[str] = None, at: datetime = None) -> Booking:
    """Return a copy of booking moved to target, or raise."""
    target = BookingStatus(target)
    if not can_transition(booking.status, target):
        raise InvalidTransition(booking.status, target)
    if target == S.COMPLETED and booking.payment_status != PaymentStatus.COMPLETED:
        raise PaymentNotSettled(
            f"Booking {booking.id} cannot complete while payment is {booking.payment_status.value}"
        )
    at = at or utcnow()
    entry = StatusHistoryEntry(status=target, at=at, note=note)
    return booking.model_copy(update={
        "status": target,
        "status_history": [*booking.status_history, entry],
        "updated_at": at,
    })


def legacy_status(status: BookingStatus) -> LegacyStatus:
    """Project the pipeline onto the pending/confirmed/cancelled display vocabulary."""
    status = BookingStatus(status)
    if status == S.PENDING_PAYMENT:
        return "pending"
    if status == S.CANCELLED:
        return "cancelled"
    return "confirmed"


class BookingStateMachine:
    def __init__(self, bookings, publisher, tm):
        self.bookings = bookings
        self.publisher = publisher
        self.tm = tm

    def _write(self, current: Booking, updated: Booking) -> Booking:
        patch = {
            "status": updated.status,
            "payment_status": updated.payment_status,
            "status_history": updated.status_history,
            "updated_at": updated.updated_at,
        }
        return self.bookings.update(current.id, patch, current.version)

    def _announce(self, before: Booking, after: Booking):
        if before.status == after.status:
            return
        logger.info(f"Booking {after.id}: {before.status.value} -> {after.status.value}")
        safe_publish(self.publisher, BookingStatusChanged(
            booking_id=after.id,
            from_status=before.status,
            to_status=after.status,
            note=after.status_history[-1].note,
        ))

    def apply(self, booking_id: str, target: BookingStatus, note: Optional[str] = None) -> Booking:
        """Persist one transition. Business-rule errors are raised as-is, never retried."""

        def attempt():
            current = self.bookings.get(booking_id)
            return current, self._write(current, transition(current, target, note))

        before, after = self.tm.step(f"booking {booking_id} -> {BookingStatus(target).value}", attempt)
        self._announce(before, after)
        return after

    def sync_payment_status(
        self, booking_id: str, payment_status: PaymentStatus, note: Optional[str] = None
    ) -> Tuple[Booking, bool]:
        """
        Mirror the payment's status onto the booking. A completed payment also
        moves a pending_payment booking to processing, in the same write.

        Returns the stored booking and whether anything changed; re-running with
        the same status is a no-op.
        """
        payment_status = PaymentStatus(payment_status)

        def attempt():
            current = self.bookings.get(booking_id)
            updated = current.model_copy(update={"payment_status": payment_status, "updated_at": utcnow()})
            if payment_status == PaymentStatus.COMPLETED:
                if current.status == S.PENDING_PAYMENT:
                    updated = transition(updated, S.PROCESSING, note)
                elif current.status == S.CANCELLED and current.payment_status != PaymentStatus.COMPLETED:
                    logger.warning(f"Booking {booking_id} was paid after cancellation; needs a refund")
            if updated.status == current.status and updated.payment_status == current.payment_status:
                return current, current, False
            return current, self._write(current, updated), True

        before, after, changed = self.tm.step(f"sync payment status of booking {booking_id}", attempt)
        if changed:
            logger.info(
                f"Booking {booking_id}: payment {before.payment_status.value} -> {after.payment_status.value}"
            )
            self._announce(before, after)
        return after, changed
