"""
Error kinds raised by the booking engine.

Business-rule errors are surfaced to the caller verbatim. Only subclasses of
TransientError are retried (see txn_manager.TransactionManager.step).
"""


class BookingEngineError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(BookingEngineError):
    """Input out of bounds (traveler counts, dates, amounts)."""


class RefundDecisionRequired(ValidationError):
    """A paid booking is being cancelled without saying whether to refund."""


class NotFound(BookingEngineError):
    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


class InvalidTransition(BookingEngineError):
    def __init__(self, from_status, to_status):
        super().__init__(f"Transition {_value(from_status)} -> {_value(to_status)} is not allowed")
        self.from_status = from_status
        self.to_status = to_status


class PaymentNotSettled(BookingEngineError):
    """The operation needs a completed payment."""


class DuplicatePayment(BookingEngineError):
    def __init__(self, booking_id: str):
        super().__init__(f"Booking {booking_id} already has a live payment")
        self.booking_id = booking_id


class PaymentAlreadySettled(BookingEngineError):
    """The payment reached a terminal state and cannot take this outcome."""


class DuplicateRecord(BookingEngineError):
    """A unique key clashed in the record store."""


class InvalidSignature(BookingEngineError):
    """Gateway callback signature did not verify."""


class TransientError(BookingEngineError):
    """Failure that may succeed on a later attempt."""


class VersionConflict(TransientError):
    def __init__(self, kind: str, record_id: str, expected_version: int):
        super().__init__(f"{kind} {record_id} changed since version {expected_version}")
        self.kind = kind
        self.record_id = record_id
        self.expected_version = expected_version


class StoreUnavailable(TransientError):
    """The record store could not be reached or failed mid-write."""


class GatewayTimeout(TransientError):
    """The payment gateway gave no authoritative answer."""


def _value(status):
    return getattr(status, "value", status)
