"""
Canonical date keys.

Every ledger lookup goes through a dd/mm/yyyy key. Operators may type ISO
dates (2026-02-01), day-first dates with "/", ".", "-" or spaces, and
two-digit years, which are read as 20yy.
"""

import datetime
import re

_ISO = re.compile(r"(?<!\d)(\d{4})([-/. ])(\d{1,2})\2(\d{1,2})(?!\d)")
_DAY_FIRST = re.compile(r"(?<!\d)(\d{1,2})([-/. ])(\d{1,2})\2(\d{4}|\d{2})(?!\d)")


def _key(year: int, month: int, day: int) -> str | None:
    if year < 100:
        year += 2000
    try:
        parsed = datetime.date(year, month, day)
    except ValueError:
        return None
    return parsed.strftime("%d/%m/%Y")


def _from_match(match: re.Match, iso: bool) -> str | None:
    if iso:
        year, month, day = match.group(1), match.group(3), match.group(4)
    else:
        day, month, year = match.group(1), match.group(3), match.group(4)
    return _key(int(year), int(month), int(day))


def normalize_date_key(token) -> str | None:
    """Return the dd/mm/yyyy key for a single date token, or None."""
    if isinstance(token, datetime.datetime):
        token = token.date()
    if isinstance(token, datetime.date):
        return token.strftime("%d/%m/%Y")
    if token is None:
        return None

    text = str(token).strip()
    match = _ISO.fullmatch(text)
    if match:
        return _from_match(match, iso=True)
    match = _DAY_FIRST.fullmatch(text)
    if match:
        return _from_match(match, iso=False)
    return None


def extract_date_key(text: str) -> str | None:
    """Find the first valid date anywhere in a free-text message."""
    for pattern, iso in ((_ISO, True), (_DAY_FIRST, False)):
        for match in pattern.finditer(text or ""):
            key = _from_match(match, iso)
            if key:
                return key
    return None


def key_to_date(key: str) -> datetime.date:
    return datetime.datetime.strptime(key, "%d/%m/%Y").date()
