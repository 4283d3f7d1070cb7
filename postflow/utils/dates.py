"""Parsing of calendar dates and wall-clock times coming from HTTP bodies."""

import re
from datetime import date, datetime
from typing import Any

from postflow.errors import ValidationError

TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
DATE_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")


def parse_date(value: Any, field_name: str = "scheduled_date") -> date:
    """Accept a date, a datetime (date part) or an ISO 'YYYY-MM-DD' string (time suffix ignored)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required", details={"field": field_name})
    m = DATE_PATTERN.match(value.strip())
    if not m:
        raise ValidationError(f"{field_name} must be YYYY-MM-DD", details={"field": field_name})
    try:
        return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    except ValueError:
        raise ValidationError(f"{field_name} is not a valid date", details={"field": field_name})


def parse_time(value: Any, field_name: str = "scheduled_time") -> str:
    """Normalize 'H:MM', 'HH:MM' or 'HH:MM:SS' to 'HH:MM'."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required", details={"field": field_name})
    m = TIME_PATTERN.match(value.strip())
    if not m:
        raise ValidationError(f"{field_name} must be HH:MM", details={"field": field_name})
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise ValidationError(f"{field_name} is not a valid time", details={"field": field_name})
    return f"{hour:02d}:{minute:02d}"
