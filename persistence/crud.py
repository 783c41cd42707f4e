"""
Record stores for bookings and payments.

Both follow the same logical contract: get(id), create(record) and
update(id, patch, expected_version). update is a conditional write on the
version column; a stale expected_version raises VersionConflict and the
caller re-reads and retries (see txn_manager.TransactionManager.step).
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from booking_errors import DuplicatePayment, DuplicateRecord, NotFound, StoreUnavailable, VersionConflict
from booking_schemas import Booking, Payment, PaymentStatus, utcnow
from persistence.models import BookingModel, PaymentModel

logger = logging.getLogger(__name__)


def _column_value(value):
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_column_value(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    return value


def _as_utc(value):
    # SQLite hands back naive datetimes; everything is written in UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _RecordStore:
    kind: str = None
    model = None
    schema = None

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._columns = {c.name for c in self.model.__table__.columns}

    def model_to_pydantic(self, row):
        return self.schema.model_validate(
            {name: _as_utc(getattr(row, name)) for name in self.schema.model_fields if name in self._columns}
        )

    def _extra_columns(self, values: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    def _first(self, stmt):
        try:
            with self._session_factory() as db:
                row = db.execute(stmt).scalars().first()
                return self.model_to_pydantic(row) if row is not None else None
        except OperationalError as e:
            raise StoreUnavailable(f"reading {self.kind}: {e}") from e

    def get(self, record_id: str):
        record = self._first(select(self.model).where(self.model.id == record_id))
        if record is None:
            raise NotFound(self.kind, record_id)
        return record

    def create(self, record):
        values = {name: _column_value(value) for name, value in record}
        values.update(self._extra_columns(values))
        try:
            with self._session_factory() as db:
                db.add(self.model(**values))
                db.commit()
        except IntegrityError as e:
            raise DuplicateRecord(f"{self.kind} {record.id}: {e.orig}") from e
        except OperationalError as e:
            raise StoreUnavailable(f"creating {self.kind} {record.id}: {e}") from e
        logger.debug(f"Created {self.kind} {record.id}")
        return self.get(record.id)

    def update(self, record_id: str, patch: Dict[str, Any], expected_version: int):
        unknown = set(patch) - self._columns
        if unknown:
            raise ValueError(f"Unknown {self.kind} fields: {sorted(unknown)}")

        values = {name: _column_value(value) for name, value in patch.items()}
        values.update(self._extra_columns(values))
        values.setdefault("updated_at", utcnow())
        values["version"] = expected_version + 1

        stmt = (
            update(self.model)
            .where(self.model.id == record_id, self.model.version == expected_version)
            .values(**values)
        )
        try:
            with self._session_factory() as db:
                result = db.execute(stmt)
                if result.rowcount == 0:
                    db.rollback()
                    exists = db.execute(select(self.model.id).where(self.model.id == record_id)).first()
                    if exists is None:
                        raise NotFound(self.kind, record_id)
                    raise VersionConflict(self.kind, record_id, expected_version)
                db.commit()
        except IntegrityError as e:
            raise DuplicateRecord(f"{self.kind} {record_id}: {e.orig}") from e
        except OperationalError as e:
            raise StoreUnavailable(f"updating {self.kind} {record_id}: {e}") from e
        return self.get(record_id)


class BookingStore(_RecordStore):
    kind = "booking"
    model = BookingModel
    schema = Booking

    def get(self, record_id: str) -> Booking:
        return super().get(record_id)

    def find_by_idempotency_key(self, key: str) -> Optional[Booking]:
        return self._first(select(BookingModel).where(BookingModel.idempotency_key == key))


class PaymentStore(_RecordStore):
    kind = "payment"
    model = PaymentModel
    schema = Payment

    def _extra_columns(self, values):
        status = values.get("status")
        if status == PaymentStatus.FAILED.value:
            return {"booking_key": None}
        if "booking_id" in values:
            return {"booking_key": values["booking_id"]}
        return {}

    def get(self, record_id: str) -> Payment:
        return super().get(record_id)

    def create(self, record: Payment) -> Payment:
        try:
            return super().create(record)
        except DuplicateRecord:
            raise DuplicatePayment(record.booking_id)

    def get_by_booking_id(self, booking_id: str) -> Optional[Payment]:
        """The live payment for booking_id, else its most recent (failed) one."""
        live = self._first(select(PaymentModel).where(PaymentModel.booking_key == booking_id))
        if live is not None:
            return live
        return self._first(
            select(PaymentModel)
            .where(PaymentModel.booking_id == booking_id)
            .order_by(PaymentModel.created_at.desc())
        )
