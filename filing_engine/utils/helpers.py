"""Shared utility functions used by services and blueprints.

parse_date:        lenient date parsing (returns None on bad input)
parse_date_input:  strict date parsing (raises ValidationError on bad input)
KeyedLocks:        per-entity in-process mutexes (one filing / execution at a time)
"""
import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime

from filing_engine.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


def parse_date(value):
    """Parse a date string (ISO or DD.MM.YYYY) to a date object.

    Returns None for empty/invalid input. Supports:
    - YYYY-MM-DD (ISO format)
    - YYYY-MM-DDTHH:MM:SS (datetime ISO → .date())
    - DD.MM.YYYY (European format)
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except (ValueError, TypeError):
        return None


def parse_date_input(value, field_name="date"):
    """Same as parse_date() but raises ValidationError for missing or bad input."""
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError(
            f"Invalid or missing {field_name}. Use YYYY-MM-DD or DD.MM.YYYY.",
            details={field_name: value},
        )
    return parsed


# ── Per-entity locks ─────────────────────────────────────────────────────────


class _LockEntry:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLocks:
    """Registry of one ``threading.Lock`` per key.

    Serializes work on a single filing or execution inside this process;
    the database row is re-read under the lock so a second caller sees the
    first caller's committed state. An entry lives only while someone holds
    or waits on it, so the registry stays as small as the current workload.

    Usage::

        _locks = KeyedLocks()
        with _locks.hold(filing_id):
            ...
    """

    def __init__(self):
        self._locks: dict[str, _LockEntry] = {}
        self._guard = threading.Lock()

    def _checkout(self, key):
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _LockEntry()
            entry.holders += 1
            return entry.lock

    def _checkin(self, key):
        with self._guard:
            entry = self._locks[key]
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key):
        key = str(key)
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)

    @contextmanager
    def try_hold(self, key):
        """Non-blocking variant: yields False immediately if ``key`` is busy."""
        key = str(key)
        lock = self._checkout(key)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
            self._checkin(key)

    def __len__(self):
        with self._guard:
            return len(self._locks)
