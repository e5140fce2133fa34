"""
Time helpers.

All timestamps handled by the governance layer are timezone-aware UTC.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Optional

from pydantic import AfterValidator, TypeAdapter

_datetime_adapter = TypeAdapter(datetime)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Coerce an ISO-8601 string, epoch number or datetime to an aware UTC datetime.

    Returns None for values that cannot be interpreted as a point in time.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(_datetime_adapter.validate_python(value))
    except ValueError:
        return None


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with a ``Z`` suffix for UTC, matching the event wire format."""
    if value is None:
        return None
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


# Pydantic field type: naive values are read as UTC
UtcDateTime = Annotated[datetime, AfterValidator(ensure_utc)]
