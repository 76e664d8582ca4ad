"""gigsettle storage backends.

SQLite persistence for the settlement engine lives in ``gigsettle.storage.sqlite``;
this package root only exposes the backend-independent pieces so the
commerce services can import them without pulling in a backend.
"""

from .base import (
    DuplicateRecordError,
    SettlementStore,
    StorageError,
    ensure_utc,
    format_datetime,
    parse_datetime,
    utc_now,
)
from .schema import SCHEMA_VERSION

__all__ = [
    "DuplicateRecordError",
    "SCHEMA_VERSION",
    "SettlementStore",
    "StorageError",
    "ensure_utc",
    "format_datetime",
    "parse_datetime",
    "utc_now",
]
