from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PROCESSING = "processing"
    DOCUMENTS_VERIFIED = "documents_verified"
    VISA_SUBMITTED = "visa_submitted"
    VISA_APPROVED = "visa_approved"
    READY_TO_FLY = "ready_to_fly"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class GatewayOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# display-only vocabulary used by older admin screens
LegacyStatus = Literal["pending", "confirmed", "cancelled"]


class Traveler(BaseModel):
    id: str
    name: str
    age: int = Field(ge=0)
    type: Literal["adult", "child", "infant"]
    passport_number: Optional[str] = None


class PriceBreakdown(BaseModel):
    # all amounts are integer minor units (cents)
    adult_total: int = Field(ge=0)
    child_total: int = Field(ge=0)
    infant_total: int = Field(ge=0)
    service_fee: int = Field(ge=0)
    total: int = Field(ge=0)


class StatusHistoryEntry(BaseModel):
    status: BookingStatus
    at: datetime
    note: Optional[str] = None


class Booking(BaseModel):
    id: str
    booking_ref: str
    user_id: str
    package_id: str
    package_title: str
    destination: str
    departure_date: date
    return_date: date
    travelers: List[Traveler]
    unit_price: int = Field(ge=0)
    currency: str
    price: PriceBreakdown
    status: BookingStatus = BookingStatus.PENDING_PAYMENT
    payment_status: PaymentStatus = PaymentStatus.PENDING
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    idempotency_key: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1


class Payment(BaseModel):
    id: str
    booking_id: str
    user_id: str
    amount: int = Field(ge=0)
    currency: str
    gateway_provider: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    method: Optional[str] = None
    failure_reason: Optional[str] = None
    refund_id: Optional[str] = None
    refund_amount: Optional[int] = None
    refund_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1


class BookingDraft(BaseModel):
    """What a customer submits from the review screen."""
    user_id: str
    package_id: str
    package_title: str
    destination: str
    departure_date: date
    return_date: date
    unit_price: int = Field(ge=0)
    currency: Optional[str] = None
    travelers: List[Traveler]


class BookingReceipt(BaseModel):
    booking_id: str
    booking_ref: str
    payment_id: str
    total: int
    currency: str


class GatewayResult(BaseModel):
    payment_id: str
    outcome: GatewayOutcome
    gateway_payment_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    gateway_order_id: Optional[str] = None
    method: Optional[str] = None
