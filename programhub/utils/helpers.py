"""Shared parsing helpers for wizard form values.

parse_date:          lenient date parsing (returns None on bad input)
parse_number:        lenient numeric parsing for form values (returns None on bad input)
parse_int:           lenient integer parsing for form values
parse_bool:          checkbox / "true"/"false" parsing (returns None on bad input)
"""
import math
from datetime import date, datetime

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off"}


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


def parse_number(value):
    """Parse a form value ("1500", "1500.50", 1500) to int or float.

    Returns None for empty/invalid input. Booleans are rejected so that a
    checkbox value never passes as a budget; so are "nan" and "inf".
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    text = str(value).strip().replace(",", "")
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def parse_int(value):
    """Parse a form value to int; floats with a fractional part are rejected."""
    number = parse_number(value)
    if number is None:
        return None
    if isinstance(number, float):
        if not number.is_integer():
            return None
        return int(number)
    return number


def parse_bool(value, default=None):
    """Parse a checkbox value; "false", "0", "no" and "off" are False.

    Returns `default` for None/empty input and None for anything unrecognised.
    """
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return bool(value) if value in (0, 1) else None
    text = str(value).strip().lower()
    if not text:
        return default
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    return None
