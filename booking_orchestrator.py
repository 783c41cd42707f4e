import logging
from typing import List, Optional

from booking_config import Settings
from booking_errors import (
    DuplicatePayment,
    DuplicateRecord,
    InvalidTransition,
    NotFound,
    RefundDecisionRequired,
    ValidationError,
)
from booking_schemas import (
    Booking,
    BookingDraft,
    BookingReceipt,
    BookingStatus,
    GatewayOutcome,
    Payment,
    PaymentStatus,
    Traveler,
)
from booking_state import BookingStateMachine, can_transition, initial_history
from notifications.publisher import InMemoryPublisher, RedisStreamPublisher
from persistence.crud import BookingStore, PaymentStore
from persistence.db import create_session_factory, init_db
from pricing import price_for_travelers
from reconciliation import PaymentReconciliationService
from txn_manager import BookingLocks, TransactionManager, new_booking_ref, new_id

logger = logging.getLogger(__name__)


class BookingOrchestrator:
    """
    Entry point for the customer app, the gateway callbacks and the back office.

    Creation:     price -> Booking (pending_payment) -> Payment (pending)
    Payment:      gateway drives the payment, then submit_payment / webhooks
    Cancellation: refunding a completed payment is an explicit choice of the caller
    """

    def __init__(self, bookings: BookingStore, payments: PaymentStore, state_machine: BookingStateMachine,
                 reconciliation: PaymentReconciliationService, tm: TransactionManager,
                 default_currency: str = "USD"):
        self.bookings = bookings
        self.payments = payments
        self.state_machine = state_machine
        self.reconciliation = reconciliation
        self.tm = tm
        self.default_currency = default_currency

    # -- customer ---------------------------------------------------------

    def create_booking(self, draft: BookingDraft, provider: Optional[str] = None,
                       idempotency_key: Optional[str] = None) -> BookingReceipt:
        if draft.return_date < draft.departure_date:
            raise ValidationError("return date is before departure date")
        if not draft.travelers:
            raise ValidationError("a booking needs at least one traveler")

        if idempotency_key:
            existing = self.bookings.find_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info(f"Booking {existing.id} already created for key {idempotency_key}")
                return self._finish_creation(existing, provider)

        price = price_for_travelers(draft.unit_price, draft.travelers)
        booking = Booking(
            id=new_id(),
            booking_ref=new_booking_ref(),
            user_id=draft.user_id,
            package_id=draft.package_id,
            package_title=draft.package_title,
            destination=draft.destination,
            departure_date=draft.departure_date,
            return_date=draft.return_date,
            travelers=draft.travelers,
            unit_price=draft.unit_price,
            currency=(draft.currency or self.default_currency).upper(),
            price=price,
            status_history=initial_history(),
            idempotency_key=idempotency_key,
        )
        try:
            stored = self.tm.step(f"create booking {booking.id}", lambda: self.bookings.create(booking))
        except DuplicateRecord as e:
            # lost a race on the idempotency key, or a retried create had landed
            existing = self.bookings.find_by_idempotency_key(idempotency_key) if idempotency_key else None
            if existing is None:
                try:
                    existing = self.bookings.get(booking.id)
                except NotFound:
                    raise e
            stored = existing
        logger.info(f"Booking {stored.id} ({stored.booking_ref}) created, total {stored.price.total} {stored.currency}")
        return self._finish_creation(stored, provider)

    def _finish_creation(self, booking: Booking, provider: Optional[str]) -> BookingReceipt:
        payment = self.payments.get_by_booking_id(booking.id)
        if payment is None:
            try:
                payment = self.reconciliation.record_payment_created(
                    booking.id, booking.price.total, booking.currency, provider
                )
            except DuplicatePayment:
                payment = self.payments.get_by_booking_id(booking.id)
        return BookingReceipt(
            booking_id=booking.id,
            booking_ref=booking.booking_ref,
            payment_id=payment.id,
            total=booking.price.total,
            currency=booking.currency,
        )

    def update_travelers(self, booking_id: str, travelers: List[Traveler]) -> Booking:
        """Change the party before paying. Reprices the booking and its payment."""
        if not travelers:
            raise ValidationError("a booking needs at least one traveler")
        with self.tm.locked(booking_id):
            booking = self.bookings.get(booking_id)
            if booking.status != BookingStatus.PENDING_PAYMENT:
                raise ValidationError(f"Travelers of booking {booking_id} are frozen once it is {booking.status.value}")
            payment = self.payments.get_by_booking_id(booking_id)
            if payment is not None and payment.status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
                raise ValidationError(f"Payment {payment.id} is already {payment.status.value}")

            price = price_for_travelers(booking.unit_price, travelers)
            if payment is not None and payment.status == PaymentStatus.PENDING:
                self.tm.step(
                    f"reprice payment {payment.id}",
                    lambda: self._reprice_payment(payment.id, price.total),
                )

            def write():
                current = self.bookings.get(booking_id)
                return self.bookings.update(booking_id, {"travelers": travelers, "price": price}, current.version)

            updated = self.tm.step(f"update travelers of booking {booking_id}", write)
        logger.info(f"Booking {booking_id} repriced to {price.total} {updated.currency}")
        return updated

    def _reprice_payment(self, payment_id: str, amount: int) -> Payment:
        current = self.payments.get(payment_id)
        if current.status != PaymentStatus.PENDING:
            raise ValidationError(f"Payment {payment_id} is already {current.status.value}")
        return self.payments.update(payment_id, {"amount": amount}, current.version)

    def submit_payment(self, payment_id: str, outcome: GatewayOutcome, gateway_payment_id: Optional[str] = None,
                       gateway_signature: Optional[str] = None, method: Optional[str] = None,
                       gateway_order_id: Optional[str] = None) -> Payment:
        """Synchronous client-SDK callback; same semantics as the webhook."""
        return self.reconciliation.apply_gateway_result(
            payment_id, outcome, gateway_payment_id, gateway_signature, method=method,
            gateway_order_id=gateway_order_id,
        )

    # -- back office ------------------------------------------------------

    def advance_booking(self, booking_id: str, target: BookingStatus, note: Optional[str] = None) -> Booking:
        return self.state_machine.apply(booking_id, target, note)

    def refund_payment(self, booking_id: str, reason: Optional[str] = None) -> Payment:
        payment = self.get_payment_for_booking(booking_id)
        return self.reconciliation.initiate_refund(payment.id, reason)

    def cancel_booking(self, booking_id: str, reason: Optional[str] = None, refund: Optional[bool] = None) -> Booking:
        """
        Cancel a booking. When its payment is completed the caller must choose:
        refund=True refunds first, refund=False keeps the money (e.g. travel credit).
        """
        with self.tm.locked(booking_id):
            booking = self.bookings.get(booking_id)
            if not can_transition(booking.status, BookingStatus.CANCELLED):
                raise InvalidTransition(booking.status, BookingStatus.CANCELLED)
            payment = self.payments.get_by_booking_id(booking_id)
            if payment is not None and payment.status == PaymentStatus.COMPLETED:
                if refund is None:
                    raise RefundDecisionRequired(
                        f"Booking {booking_id} is paid; pass refund=True or refund=False to cancel it"
                    )
                if refund:
                    self.reconciliation.initiate_refund(payment.id, reason)
                else:
                    logger.warning(f"Cancelling paid booking {booking_id} without a refund")
            return self.state_machine.apply(booking_id, BookingStatus.CANCELLED, reason or "Cancelled by user")

    def reconcile(self, booking_id: str) -> Booking:
        return self.reconciliation.reconcile(booking_id)

    # -- queries ----------------------------------------------------------

    def get_booking(self, booking_id: str) -> Booking:
        return self.bookings.get(booking_id)

    def get_payment_for_booking(self, booking_id: str) -> Payment:
        payment = self.payments.get_by_booking_id(booking_id)
        if payment is None:
            raise NotFound("payment for booking", booking_id)
        return payment


def build_orchestrator(settings: Settings, publisher=None, create_tables: bool = True) -> BookingOrchestrator:
    """Wire the engine once at process start."""
    engine, session_factory = create_session_factory(settings.database_url)
    if create_tables:
        init_db(engine)

    if publisher is None:
        if settings.redis_url:
            publisher = RedisStreamPublisher.from_url(settings.redis_url, stream=settings.event_stream)
        else:
            publisher = InMemoryPublisher()

    tm = TransactionManager(BookingLocks(), settings.max_write_attempts, settings.retry_base_delay)
    bookings = BookingStore(session_factory)
    payments = PaymentStore(session_factory)
    state_machine = BookingStateMachine(bookings, publisher, tm)
    reconciliation = PaymentReconciliationService(bookings, payments, state_machine, publisher, tm)
    return BookingOrchestrator(bookings, payments, state_machine, reconciliation, tm,
                               default_currency=settings.default_currency)
