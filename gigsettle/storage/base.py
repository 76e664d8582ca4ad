"""Shared storage types and helpers."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import ContextManager, Optional, Protocol

_DB_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


class StorageError(Exception):
    """Base class for persistence errors."""


class DuplicateRecordError(StorageError):
    """A unique constraint rejected an insert."""


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC string so stored timestamps compare lexicographically."""
    if value is None:
        return None
    return ensure_utc(value).strftime(_DB_DATETIME_FORMAT)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def parse_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(value)


class SettlementStore(Protocol):
    """Protocol for settlement persistence backends.

    All reads and writes happen inside ``transaction()``; the block commits
    on success and rolls back on any exception.
    """

    def transaction(self, immediate: bool = True) -> ContextManager:
        ...
