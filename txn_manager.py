import logging
import secrets
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Dict, TypeVar

from booking_errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# readable alphabet, avoids 0/O and 1/I
_REF_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"


def new_id() -> str:
    return uuid.uuid4().hex


def new_booking_ref() -> str:
    """User-facing booking reference, e.g. TRP-9F2K7Q3X."""
    return "TRP-" + "".join(secrets.choice(_REF_ALPHABET) for _ in range(8))


def new_refund_id() -> str:
    return f"rfnd_{uuid.uuid4().hex}"


class BookingLocks:
    """
    Per-booking mutual exclusion, reentrant within a thread.
    A lock is created on first use and dropped once nobody holds or waits on it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def hold(self, booking_id: str):
        with self._guard:
            lock = self._locks.setdefault(booking_id, threading.RLock())
            self._users[booking_id] = self._users.get(booking_id, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[booking_id] -= 1
                if not self._users[booking_id]:
                    del self._users[booking_id]
                    del self._locks[booking_id]

    def __len__(self):
        with self._guard:
            return len(self._locks)


class TransactionManager:
    """
    Runs saga steps (Payment write, then Booking write) for one booking at a time.

    Each step is a read-modify-write callable; on a TransientError
    (VersionConflict, StoreUnavailable) it is re-run from the read with
    exponential backoff, up to max_attempts. Anything else propagates at once.
    """

    def __init__(self, locks: BookingLocks = None, max_attempts: int = 5, base_delay: float = 0.01):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.locks = locks if locks is not None else BookingLocks()
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def locked(self, booking_id: str):
        return self.locks.hold(booking_id)

    def step(self, description: str, fn: Callable[[], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn()
            except TransientError as e:
                if attempt == self.max_attempts:
                    logger.error(f"{description}: giving up after {attempt} attempts: {e}")
                    raise
                delay = self.base_delay * (2 ** (attempt - 1))
                logger.warning(f"{description}: attempt {attempt} failed ({e}), retrying in {delay:.3f}s")
                time.sleep(delay)
