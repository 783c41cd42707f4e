from datetime import date

import pytest

from booking_config import Settings
from booking_orchestrator import build_orchestrator
from booking_schemas import Booking, BookingDraft, Traveler
from booking_state import initial_history
from notifications.publisher import InMemoryPublisher
from pricing import compute_price
from txn_manager import new_booking_ref, new_id


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'booking.db'}",
        max_write_attempts=3,
        retry_base_delay=0,
    )


@pytest.fixture
def publisher():
    return InMemoryPublisher()


@pytest.fixture
def orchestrator(settings, publisher):
    return build_orchestrator(settings, publisher=publisher)


@pytest.fixture
def reconciliation(orchestrator):
    return orchestrator.reconciliation


@pytest.fixture
def make_travelers():
    def _make(adults=1, children=0, infants=0):
        travelers = []
        for i in range(adults):
            travelers.append(Traveler(id=f"a{i}", name=f"Adult {i}", age=35, type="adult", passport_number=f"P{i}"))
        for i in range(children):
            travelers.append(Traveler(id=f"c{i}", name=f"Child {i}", age=8, type="child"))
        for i in range(infants):
            travelers.append(Traveler(id=f"i{i}", name=f"Infant {i}", age=1, type="infant"))
        return travelers
    return _make


@pytest.fixture
def make_draft(make_travelers):
    def _make(unit_price=100000, adults=1, children=0, infants=0, **overrides):
        fields = dict(
            user_id="user_123",
            package_id="pkg_bali",
            package_title="Bali Escape",
            destination="Bali",
            departure_date=date(2026, 12, 1),
            return_date=date(2026, 12, 8),
            unit_price=unit_price,
            currency="USD",
            travelers=make_travelers(adults, children, infants),
        )
        fields.update(overrides)
        return BookingDraft(**fields)
    return _make


@pytest.fixture
def pending_booking(orchestrator, make_travelers):
    """A stored booking at pending_payment with no payment yet."""
    def _make(unit_price=100000, adults=1):
        booking = Booking(
            id=new_id(),
            booking_ref=new_booking_ref(),
            user_id="user_123",
            package_id="pkg_bali",
            package_title="Bali Escape",
            destination="Bali",
            departure_date=date(2026, 12, 1),
            return_date=date(2026, 12, 8),
            travelers=make_travelers(adults),
            unit_price=unit_price,
            currency="USD",
            price=compute_price(unit_price, adults),
            status_history=initial_history(),
        )
        return orchestrator.bookings.create(booking)
    return _make


@pytest.fixture
def paid_booking(orchestrator, make_draft):
    """Returns (booking, payment) after a successful gateway callback."""
    def _make():
        receipt = orchestrator.create_booking(make_draft(), provider="stripe")
        payment = orchestrator.submit_payment(receipt.payment_id, "succeeded", "ch_1", "sig_1")
        return orchestrator.get_booking(receipt.booking_id), payment
    return _make
