from datetime import date

import pytest

from booking_errors import InvalidTransition, PaymentNotSettled, VersionConflict
from booking_schemas import Booking, BookingStatus, PaymentStatus, PriceBreakdown
from booking_state import TERMINAL, TRANSITIONS, initial_history, legacy_status, transition

S = BookingStatus

PIPELINE = [
    S.PENDING_PAYMENT,
    S.PROCESSING,
    S.DOCUMENTS_VERIFIED,
    S.VISA_SUBMITTED,
    S.VISA_APPROVED,
    S.READY_TO_FLY,
    S.COMPLETED,
]


def _booking(status=S.PENDING_PAYMENT, payment_status=PaymentStatus.COMPLETED):
    history = initial_history()
    if status != S.PENDING_PAYMENT:
        history = history + [h.model_copy(update={"status": status}) for h in history]
    return Booking(
        id="bk_1",
        booking_ref="TRP-ABCDEFGH",
        user_id="user_123",
        package_id="pkg_1",
        package_title="Kyoto in Autumn",
        destination="Kyoto",
        departure_date=date(2026, 11, 1),
        return_date=date(2026, 11, 9),
        travelers=[],
        unit_price=100000,
        currency="USD",
        price=PriceBreakdown(adult_total=100000, child_total=0, infant_total=0, service_fee=5000, total=105000),
        status=status,
        payment_status=payment_status,
        status_history=history,
    )


def test_table_matches_pipeline():
    for current, following in zip(PIPELINE, PIPELINE[1:]):
        assert TRANSITIONS[current] == {following, S.CANCELLED}
    assert TERMINAL == {S.COMPLETED, S.CANCELLED}


@pytest.mark.parametrize("source", list(BookingStatus))
@pytest.mark.parametrize("target", list(BookingStatus))
def test_every_pair_outside_the_table_is_rejected(source, target):
    booking = _booking(source, PaymentStatus.COMPLETED)
    if target in TRANSITIONS[source]:
        moved = transition(booking, target)
        assert moved.status == target
    else:
        with pytest.raises(InvalidTransition) as exc:
            transition(booking, target)
        assert exc.value.from_status == source
        assert exc.value.to_status == target
        assert source.value in str(exc.value) and target.value in str(exc.value)


def test_transition_appends_history_and_leaves_input_untouched():
    booking = _booking(S.PENDING_PAYMENT)

    moved = transition(booking, S.PROCESSING, note="paid")

    assert booking.status == S.PENDING_PAYMENT
    assert len(booking.status_history) == 1
    assert moved.status == S.PROCESSING
    assert len(moved.status_history) == 2
    assert moved.status_history[-1].status == moved.status
    assert moved.status_history[-1].note == "paid"


@pytest.mark.parametrize("payment_status", [
    PaymentStatus.PENDING,
    PaymentStatus.PROCESSING,
    PaymentStatus.FAILED,
    PaymentStatus.REFUNDED,
])
def test_completed_needs_completed_payment(payment_status):
    with pytest.raises(PaymentNotSettled):
        transition(_booking(S.READY_TO_FLY, payment_status), S.COMPLETED)


@pytest.mark.parametrize("source", [s for s in BookingStatus if s not in TERMINAL])
@pytest.mark.parametrize("payment_status", list(PaymentStatus))
def test_cancel_from_any_open_status_whatever_the_payment(source, payment_status):
    moved = transition(_booking(source, payment_status), S.CANCELLED, note="changed plans")
    assert moved.status == S.CANCELLED
    assert moved.payment_status == payment_status


def test_legacy_projection():
    assert legacy_status(S.PENDING_PAYMENT) == "pending"
    assert legacy_status(S.CANCELLED) == "cancelled"
    for status in PIPELINE[1:]:
        assert legacy_status(status) == "confirmed"


def test_apply_persists_and_announces(orchestrator, publisher, paid_booking):
    booking, _ = paid_booking()
    before = len(publisher.of_type("BookingStatusChanged"))

    moved = orchestrator.state_machine.apply(booking.id, S.DOCUMENTS_VERIFIED, note="passports checked")

    stored = orchestrator.get_booking(booking.id)
    assert stored.status == S.DOCUMENTS_VERIFIED
    assert stored.version == booking.version + 1
    assert stored.status_history[-1].note == "passports checked"
    assert moved == stored
    events = publisher.of_type("BookingStatusChanged")
    assert len(events) == before + 1
    assert events[-1].from_status == S.PROCESSING
    assert events[-1].to_status == S.DOCUMENTS_VERIFIED


def test_apply_rejects_skipping_stages(orchestrator, publisher, paid_booking):
    booking, _ = paid_booking()
    before = len(publisher.events)

    with pytest.raises(InvalidTransition):
        orchestrator.state_machine.apply(booking.id, S.VISA_APPROVED)

    assert orchestrator.get_booking(booking.id).status == S.PROCESSING
    assert len(publisher.events) == before


def test_apply_retries_a_lost_version_race(orchestrator, paid_booking, monkeypatch):
    booking, _ = paid_booking()
    store = orchestrator.bookings
    real_update = store.update
    calls = []

    def racing_update(record_id, patch, expected_version):
        calls.append(expected_version)
        if len(calls) == 1:
            # somebody else wrote first
            real_update(record_id, {"destination": "Ubud"}, expected_version)
        return real_update(record_id, patch, expected_version)

    monkeypatch.setattr(store, "update", racing_update)

    moved = orchestrator.state_machine.apply(booking.id, S.DOCUMENTS_VERIFIED)

    assert len(calls) == 2
    assert moved.destination == "Ubud"
    assert [h.status for h in moved.status_history].count(S.DOCUMENTS_VERIFIED) == 1


def test_apply_surfaces_conflict_after_bounded_attempts(orchestrator, paid_booking, monkeypatch):
    booking, _ = paid_booking()
    calls = []

    def always_stale(record_id, patch, expected_version):
        calls.append(expected_version)
        raise VersionConflict("booking", record_id, expected_version)

    monkeypatch.setattr(orchestrator.bookings, "update", always_stale)

    with pytest.raises(VersionConflict):
        orchestrator.state_machine.apply(booking.id, S.DOCUMENTS_VERIFIED)
    assert len(calls) == orchestrator.tm.max_attempts
