"""Process-local failure counters keyed by IP address or user id.

State lives in this process only. Several server instances each keep their
own counters, so limits are per instance. A shared store can replace
``InMemoryAttemptTracker`` without changing callers, as long as it offers the
same get/record/claim/lock/clear/cleanup surface.
"""

from collections.abc import Hashable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from threading import Lock
from typing import Protocol


@dataclass(frozen=True)
class AttemptRecord:
    count: int
    last_attempt_at: datetime
    # End of the sliding window; None when the count never expires on its own
    reset_at: datetime | None = None
    locked_until: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        if self.locked_until is not None:
            return now >= self.locked_until
        return self.reset_at is not None and now >= self.reset_at


class AttemptTracker(Protocol):
    def get(self, key: Hashable, now: datetime) -> AttemptRecord | None: ...

    def record(self, key: Hashable, now: datetime, window: timedelta | None = None) -> AttemptRecord: ...

    def lock(self, key: Hashable, until: datetime) -> AttemptRecord | None: ...

    def claim(self, key: Hashable, now: datetime, window: timedelta) -> bool: ...

    def clear(self, key: Hashable) -> bool: ...

    def cleanup(self, now: datetime) -> int: ...


class InMemoryAttemptTracker:
    """Thread-safe dict of AttemptRecord, expired lazily on read."""

    def __init__(self) -> None:
        self._records: dict[Hashable, AttemptRecord] = {}
        self._lock = Lock()

    def get(self, key: Hashable, now: datetime) -> AttemptRecord | None:
        with self._lock:
            record = self._records.get(key)
            if record is not None and record.is_expired(now):
                del self._records[key]
                return None
            return record

    def record(self, key: Hashable, now: datetime, window: timedelta | None = None) -> AttemptRecord:
        """Count one failure, starting a fresh record if none is live."""
        with self._lock:
            record = self._records.get(key)
            if record is None or record.is_expired(now):
                record = AttemptRecord(
                    count=1,
                    last_attempt_at=now,
                    reset_at=now + window if window is not None else None,
                )
            else:
                record = replace(record, count=record.count + 1, last_attempt_at=now)
            self._records[key] = record
            return record

    def lock(self, key: Hashable, until: datetime) -> AttemptRecord | None:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            record = replace(record, locked_until=until)
            self._records[key] = record
            return record

    def claim(self, key: Hashable, now: datetime, window: timedelta) -> bool:
        """Atomically start a record for ``key``. False if a live one already exists."""
        with self._lock:
            record = self._records.get(key)
            if record is not None and not record.is_expired(now):
                return False
            self._records[key] = AttemptRecord(count=1, last_attempt_at=now, reset_at=now + window)
            return True

    def clear(self, key: Hashable) -> bool:
        with self._lock:
            return self._records.pop(key, None) is not None

    def cleanup(self, now: datetime) -> int:
        """Drop every expired record. Returns how many were removed."""
        with self._lock:
            expired = [key for key, record in self._records.items() if record.is_expired(now)]
            for key in expired:
                del self._records[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
