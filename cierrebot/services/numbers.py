"""
Amount parsing for operator input.

Operators type amounts in whatever form their keyboard or habit suggests:
"1.234.567", "1,234,567.50", "$ 5.000", "12,50". parse_amount() reads all of
them into a float rounded to cents, and returns None (never 0) when the token
cannot be trusted.

Separator rules:
- both "." and "," present: the right-most one is the decimal separator,
  the other one is thousands grouping
- only one of them present: it is a decimal separator only when exactly two
  digits follow its last occurrence, otherwise it is grouping
"""

import logging
import math
import re

logger = logging.getLogger(__name__)

_MAX_INTEGER_DIGITS = 12
_MAX_MAGNITUDE = 1e12

_NOT_NUMERIC = re.compile(r"[^\d.,]")
# A minus sign only counts when it starts the token, so "5000-4000" is two amounts.
_AMOUNT_TOKEN = re.compile(r"(?<![\w.,])-?\d[\d.,]*")


def _split_parts(cleaned: str) -> tuple[str, str]:
    last_dot = cleaned.rfind(".")
    last_comma = cleaned.rfind(",")

    if last_dot >= 0 and last_comma >= 0:
        decimal = "." if last_dot > last_comma else ","
        head, _, tail = cleaned.rpartition(decimal)
        integer = head.replace(".", "").replace(",", "")
        return integer, tail

    if last_dot >= 0 or last_comma >= 0:
        sep = "." if last_dot >= 0 else ","
        head, _, tail = cleaned.rpartition(sep)
        if len(tail) == 2:
            return head.replace(sep, ""), tail
        return cleaned.replace(sep, ""), ""

    return cleaned, ""


def parse_amount(token) -> float | None:
    """Parse one amount token. Returns None when it is unparseable or out of range."""
    if token is None:
        return None
    raw = str(token).strip()
    negative = raw.startswith("-")
    cleaned = _NOT_NUMERIC.sub("", raw)
    if not any(ch.isdigit() for ch in cleaned):
        return None

    integer, fraction = _split_parts(cleaned)
    integer = integer.lstrip("0") or "0"
    if len(integer) > _MAX_INTEGER_DIGITS:
        return None

    value = float(f"{integer}.{fraction or '0'}")
    if value > _MAX_MAGNITUDE:
        return None
    if negative:
        value = -value
    return round(value, 2)


def extract_amounts(text: str) -> list[float] | None:
    """
    Return every amount found in a message, in order.

    None means at least one numeric-looking token was rejected, which callers
    treat as a validation failure rather than silently dropping it.
    """
    amounts = []
    for token in _AMOUNT_TOKEN.findall(text or ""):
        value = parse_amount(token)
        if value is None:
            logger.debug("Rejected amount token %r", token)
            return None
        amounts.append(value)
    return amounts


def round_units(value: float) -> int:
    """Half-up rounding to whole currency units."""
    return math.floor(value + 0.5)


def format_amount(value: float) -> str:
    """Render an amount as "1.234.567" or "1.234,56"; parse_amount() reads it back."""
    cents = round(abs(value) * 100)
    whole, frac = divmod(cents, 100)
    text = f"{whole:,}".replace(",", ".")
    if frac:
        text = f"{text},{frac:02d}"
    if value < 0 and cents:
        text = f"-{text}"
    return text
