from __future__ import annotations

import re
from datetime import date, timedelta
from types import MappingProxyType

# Calendar order; the first month in this order found in a phrase wins.
MONTHS = MappingProxyType(
    {
        "january": 1,
        "february": 2,
        "march": 3,
        "april": 4,
        "may": 5,
        "june": 6,
        "july": 7,
        "august": 8,
        "september": 9,
        "october": 10,
        "november": 11,
        "december": 12,
    }
)

UNRESOLVED: tuple[None, None] = (None, None)

RANGE_SEPARATORS = (" - ", " to ")

_ORDINAL_RE = re.compile(r"(\d+)(st|nd|rd|th)", re.IGNORECASE)
_YEAR_RE = re.compile(r"\b(20\d{2})\b")
_DAY_RE = re.compile(r"\d+")


def strip_ordinals(value: str) -> str:
    return _ORDINAL_RE.sub(r"\1", value)


def find_month(value: str) -> int | None:
    lower_value = value.lower()
    for name, number in MONTHS.items():
        if name in lower_value:
            return number
    return None


def find_day(value: str) -> int | None:
    match = _DAY_RE.search(value)
    return int(match.group(0)) if match else None


def extract_year(value: str) -> tuple[str, int | None]:
    """Pull an explicit year out of a phrase.

    Returns the phrase with every occurrence of the year (and a comma in front
    of it) removed, so the year digits are never read back as a day number.
    """
    match = _YEAR_RE.search(value)
    if not match:
        return value, None
    year_text = match.group(1)
    stripped = re.sub(rf",?\s*\b{year_text}\b", "", value).strip()
    return stripped, int(year_text)


def _resolve_range(start_text: str, end_text: str, phrase: str, year: int) -> tuple[date, date] | None:
    start_month = find_month(start_text) or find_month(phrase)
    end_month = find_month(end_text) or start_month
    start_day = find_day(start_text)
    end_day = find_day(end_text)
    if start_month is None or end_month is None or start_day is None or end_day is None:
        return None

    start = date(year, start_month, start_day)
    end = date(year, end_month, end_day)
    if end < start and end_month < start_month:
        end = date(year + 1, end_month, end_day)
    if end < start:
        return None
    return start, end


def _resolve_single(phrase: str, year: int) -> tuple[date, date] | None:
    month = find_month(phrase)
    day = find_day(phrase)
    if month is None or day is None:
        return None
    start = date(year, month, day)
    return start, start


def resolve_date_phrase(phrase: str, year: int) -> tuple[date | None, date | None]:
    """Resolve a free-form date phrase into a (start, exclusive end) pair.

    ``year`` is used when the phrase carries none. Unresolvable phrases return
    ``(None, None)``, as does an explicit "Not announced yet". Days that do not
    exist in their month (``31 April``) are unresolvable rather than rolled
    forward into the next month.
    """
    text = strip_ordinals(phrase).strip()
    if "not announced yet" in text.lower():
        return UNRESOLVED

    text, explicit_year = extract_year(text)
    if explicit_year is not None:
        year = explicit_year

    separator = next((sep for sep in RANGE_SEPARATORS if sep in text), None)
    try:
        if separator is None:
            resolved = _resolve_single(text, year)
        else:
            parts = text.split(separator)
            if len(parts) != 2:
                return UNRESOLVED
            resolved = _resolve_range(parts[0].strip(), parts[1].strip(), text, year)
    except ValueError:
        return UNRESOLVED

    if resolved is None:
        return UNRESOLVED
    start, end = resolved
    return start, end + timedelta(days=1)
