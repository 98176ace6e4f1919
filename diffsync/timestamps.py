from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

from diffsync.exceptions import InvalidTimestampError

_ZONED = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}(:\d{2}(\.\d{1,6})?)?(Z|[+-]\d{2}:?\d{2})$"
)
_SPACED = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}(:\d{2}(\.\d{1,6})?)?$")
_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw: str, allow_future: bool = True, now: Optional[datetime] = None) -> datetime:
    """Parse one of the three accepted baseline forms into an aware UTC datetime.

    Accepted: ``2025-10-25T12:00:00Z`` (any offset, optional fraction),
    ``2025-10-25 12:00:00`` and ``2025-10-25``. Naive forms are UTC.
    """
    text = raw.strip() if isinstance(raw, str) else ""
    if not (_ZONED.match(text) or _SPACED.match(text) or _DATE_ONLY.match(text)):
        raise InvalidTimestampError(f"Invalid timestamp format: {raw!r}")

    normalized = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        parsed = as_utc(datetime.fromisoformat(normalized))
    except (ValueError, OverflowError):
        raise InvalidTimestampError(f"Timestamp out of range: {raw!r}") from None

    if not allow_future and parsed > (now or datetime.now(timezone.utc)):
        raise InvalidTimestampError(f"Timestamp is in the future: {raw!r}")
    return parsed
