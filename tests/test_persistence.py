from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from booking_errors import DuplicatePayment, DuplicateRecord, NotFound, StoreUnavailable, VersionConflict
from booking_schemas import Payment, PaymentStatus
from txn_manager import new_id


def _payment(booking_id, **fields):
    return Payment(id=new_id(), booking_id=booking_id, user_id="user_123", amount=105000, currency="USD", **fields)


def test_booking_round_trips_nested_fields(orchestrator, pending_booking):
    booking = pending_booking(adults=2)

    stored = orchestrator.bookings.get(booking.id)

    assert stored.travelers == booking.travelers
    assert stored.price == booking.price
    assert stored.status_history[0].status == booking.status
    assert stored.version == 1


def test_duplicate_booking_id_is_rejected(orchestrator, pending_booking):
    booking = pending_booking()
    with pytest.raises(DuplicateRecord):
        orchestrator.bookings.create(booking)


def test_update_bumps_version_and_rejects_stale_writes(orchestrator, pending_booking):
    booking = pending_booking()
    store = orchestrator.bookings

    updated = store.update(booking.id, {"destination": "Lombok"}, expected_version=1)

    assert updated.destination == "Lombok"
    assert updated.version == 2
    with pytest.raises(VersionConflict) as exc:
        store.update(booking.id, {"destination": "Ubud"}, expected_version=1)
    assert exc.value.expected_version == 1
    assert store.get(booking.id).destination == "Lombok"


def test_update_of_missing_record(orchestrator):
    with pytest.raises(NotFound):
        orchestrator.bookings.update("missing", {"destination": "Ubud"}, expected_version=1)


def test_update_rejects_unknown_fields(orchestrator, pending_booking):
    booking = pending_booking()
    with pytest.raises(ValueError):
        orchestrator.bookings.update(booking.id, {"colour": "blue"}, expected_version=1)


def test_idempotency_key_lookup(orchestrator, make_draft):
    receipt = orchestrator.create_booking(make_draft(), idempotency_key="key-1")

    assert orchestrator.bookings.find_by_idempotency_key("key-1").id == receipt.booking_id
    assert orchestrator.bookings.find_by_idempotency_key("key-2") is None


def test_one_live_payment_per_booking(orchestrator, pending_booking):
    booking = pending_booking()
    payments = orchestrator.payments
    first = payments.create(_payment(booking.id))

    with pytest.raises(DuplicatePayment):
        payments.create(_payment(booking.id))

    payments.update(first.id, {"status": PaymentStatus.FAILED}, first.version)
    second = payments.create(_payment(booking.id))

    assert payments.get_by_booking_id(booking.id).id == second.id


def test_latest_failed_payment_is_returned_when_none_is_live(orchestrator, pending_booking):
    booking = pending_booking()
    payments = orchestrator.payments
    payment = payments.create(_payment(booking.id))
    failed = payments.update(payment.id, {"status": PaymentStatus.FAILED}, payment.version)

    assert payments.get_by_booking_id(booking.id) == failed
    assert payments.get_by_booking_id("no-such-booking") is None


def test_store_outage_is_transient(orchestrator, monkeypatch):
    def unreachable():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(orchestrator.bookings, "_session_factory", unreachable)

    with pytest.raises(StoreUnavailable):
        orchestrator.bookings.get("any")


def test_timestamps_come_back_in_utc(orchestrator, pending_booking):
    booking = pending_booking()
    payment = orchestrator.payments.create(_payment(booking.id))

    stored = orchestrator.bookings.get(booking.id)

    for value in (stored.created_at, stored.updated_at, payment.created_at, payment.updated_at):
        assert value.utcoffset() == timedelta(0)
    assert stored.created_at == booking.created_at
    assert stored.status_history[0].at <= stored.updated_at
