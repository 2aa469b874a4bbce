"""UUID helpers backed by uuid-utils."""

from __future__ import annotations

import datetime
import uuid
from typing import Final, Optional

from uuid_utils.compat import uuid7 as _uuid_utils_uuid7

_NANOS_PER_SECOND: Final = 1_000_000_000


def uuid7(nanoseconds: Optional[int] = None) -> uuid.UUID:
    """Generate a UUID v7, optionally pinned to a Unix timestamp in nanoseconds.

    UUIDv7 values are monotonic within a millisecond.
    """
    if nanoseconds is None:
        return _uuid_utils_uuid7()
    seconds, nanos = divmod(nanoseconds, _NANOS_PER_SECOND)
    return _uuid_utils_uuid7(timestamp=seconds, nanos=nanos)


def uuid7_from_datetime(dt: datetime.datetime) -> uuid.UUID:
    """Generate a UUID v7 whose timestamp matches ``dt`` (naive means UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return uuid7(int(dt.timestamp() * _NANOS_PER_SECOND))
