"""
Date/time helpers for the ``_since`` parameter.

The backing dataset stores modification times as ``YYYY-MM-DD HH:MM:SS``
strings (UTC), so every accepted input is normalized to that format.
"""

import re
from datetime import datetime, timezone
from typing import Union


SQL_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

RE_YEAR = re.compile(r"^\d{4}$")
RE_YEAR_MONTH = re.compile(r"^\d{4}-\d{2}$")
RE_TIMESTAMP = re.compile(r"^\d{9,}(\.\d+)?$")
RE_FRACTION = re.compile(r"(T\d{2}:\d{2}:\d{2})\.(\d+)")


class InvalidDateTimeError(ValueError):
    pass


def _parse(value: str) -> datetime:
    if RE_YEAR.match(value):
        value += "-01-01"
    elif RE_YEAR_MONTH.match(value):
        value += "-01"
    elif RE_TIMESTAMP.match(value):
        # Numeric values are milliseconds since the epoch
        return datetime.fromtimestamp(float(value) / 1000, tz=timezone.utc)

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"

    # fromisoformat only takes 3 or 6 fraction digits before Python 3.11
    value = RE_FRACTION.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", value)

    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise InvalidDateTimeError(f'Invalid dateTime "{value}"') from exc


def fhir_datetime(value: Union[str, int, float, None], no_future: bool = False) -> str:
    """
    Parse a FHIR date, dateTime or instant (or a numeric timestamp) and
    return it as ``YYYY-MM-DD HH:MM:SS`` in UTC.

    Raises:
        InvalidDateTimeError: If the value cannot be parsed, or is in the
            future while ``no_future`` is set
    """
    text = str(value if value is not None else "").strip()
    if not text:
        raise InvalidDateTimeError('Invalid dateTime ""')

    parsed = _parse(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    parsed = parsed.astimezone(timezone.utc)

    if no_future and parsed > datetime.now(timezone.utc):
        raise InvalidDateTimeError(f'Invalid dateTime "{text}". Future dates are not accepted!')

    return parsed.strftime(SQL_DATETIME_FORMAT)


def uint(value, default: int = 0) -> int:
    """
    Coerce a loosely typed value to a non-negative integer, falling back to
    ``default`` for anything that does not parse or is negative.
    """
    match = re.match(r"^\s*([+-]?\d+)", str(value))
    if match:
        number = int(match.group(1))
        if number >= 0:
            return number
    return uint(default, 0)


_FALSE_VALUES = re.compile(r"^(0|no|false|off|null|undefined|none|nan|)$", re.IGNORECASE)


def to_bool(value) -> bool:
    return not _FALSE_VALUES.match(str(value if value is not None else "").strip())
