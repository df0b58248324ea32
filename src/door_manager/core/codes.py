"""Code generation, validation and expiry arithmetic."""

import secrets
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from door_manager.config import PIN_CODE_PATTERN
from door_manager.core.errors import ValidationError


def generate_day_code() -> str:
    """Generate a uniformly random 5-digit day code (10000-99999)."""
    return str(10000 + secrets.randbelow(90000))


def generate_pin_code() -> str:
    """Generate a random 6-digit permanent PIN."""
    return str(100000 + secrets.randbelow(900000))


def validate_pin_code(code: Optional[str]) -> str:
    """Validate a permanent PIN (4-10 digits).

    Returns:
        The stripped code

    Raises:
        ValidationError: If the code is not a 4-10 digit numeral
    """
    code = (code or "").strip()
    if not PIN_CODE_PATTERN.match(code):
        raise ValidationError("Pin Code must be a number between 4 and 10 digits.")
    return code


def calculate_day_code_expiry(
    now: datetime, tz: ZoneInfo, expiry_hour: int = 3
) -> datetime:
    """Next occurrence of ``expiry_hour``:00 local time strictly after now.

    Before the cutoff the code expires at the cutoff today; at or after the
    cutoff (03:00:00 included) it expires at the cutoff tomorrow.

    Args:
        now: Current time. Naive values are taken as UTC.
        tz: Local timezone of the door
        expiry_hour: Local hour of the daily cutoff

    Returns:
        Timezone-aware expiry in ``tz``
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(tz)
    cutoff = time(expiry_hour, 0)

    if local_now.time() < cutoff:
        expiry_date = local_now.date()
    else:
        expiry_date = local_now.date() + timedelta(days=1)

    return datetime.combine(expiry_date, cutoff, tzinfo=tz)


def to_storage(value: datetime) -> datetime:
    """Convert an aware datetime to the naive UTC form stored in the database."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(value: datetime, tz: ZoneInfo) -> datetime:
    """Convert a stored naive UTC datetime to local time."""
    return value.replace(tzinfo=timezone.utc).astimezone(tz)
