"""
Lifecycle events handed to the notification publisher.

Ticketing, push and chat systems subscribe to these; nothing in the engine
depends on them being delivered.
"""
from datetime import datetime
from typing import Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field

from booking_schemas import BookingStatus, GatewayOutcome, utcnow


class BookingEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid4()))
    occurred_at: datetime = Field(default_factory=utcnow)
    booking_id: str


class BookingStatusChanged(BookingEvent):
    event_type: Literal["BookingStatusChanged"] = "BookingStatusChanged"
    from_status: BookingStatus
    to_status: BookingStatus
    note: Optional[str] = None


class PaymentSettled(BookingEvent):
    event_type: Literal["PaymentSettled"] = "PaymentSettled"
    payment_id: str
    outcome: GatewayOutcome
    amount: int
    currency: str


class PaymentRefunded(BookingEvent):
    event_type: Literal["PaymentRefunded"] = "PaymentRefunded"
    payment_id: str
    refund_id: str
    refund_amount: int
    reason: Optional[str] = None


Event = Union[BookingStatusChanged, PaymentSettled, PaymentRefunded]
