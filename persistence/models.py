from sqlalchemy import Column, Integer, String, Date, DateTime, JSON
from .db import Base


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(String(64), primary_key=True)
    booking_ref = Column(String(16), unique=True, index=True)
    user_id = Column(String, index=True, nullable=False)
    package_id = Column(String, index=True, nullable=False)
    package_title = Column(String, nullable=False)
    destination = Column(String, nullable=False)
    departure_date = Column(Date, nullable=False)
    return_date = Column(Date, nullable=False)
    unit_price = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)

    # JSON fields hold the nested value objects as plain dicts/lists
    travelers = Column(JSON, default=list)
    price = Column(JSON, nullable=False)
    status_history = Column(JSON, default=list)

    status = Column(String(32), default="pending_payment", index=True)
    payment_status = Column(String(32), default="pending")
    idempotency_key = Column(String, unique=True, index=True, nullable=True)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=1)


class PaymentModel(Base):
    __tablename__ = "payments"

    id = Column(String(64), primary_key=True)
    booking_id = Column(String(64), index=True, nullable=False)
    # equals booking_id while the payment is live, NULL once it failed;
    # unique so a booking never has two live payments
    booking_key = Column(String(64), unique=True, nullable=True)
    user_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)
    gateway_provider = Column(String(64), nullable=True)
    gateway_order_id = Column(String, nullable=True)
    gateway_payment_id = Column(String, nullable=True)
    gateway_signature = Column(String, nullable=True)
    status = Column(String(32), default="pending", index=True)
    method = Column(String(32), nullable=True)
    failure_reason = Column(String, nullable=True)
    refund_id = Column(String, nullable=True)
    refund_amount = Column(Integer, nullable=True)
    refund_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=1)
