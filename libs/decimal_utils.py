from decimal import ROUND_HALF_UP, Decimal
import re

_GROUPING_RE = re.compile(r"[,.\s]")
_DIGITS_RE = re.compile(r"^[0-9]+$")

CENTS = Decimal("0.01")


def parse_grouped_amount(num_str: str) -> int:
    """
    Converts a whole peso amount with thousands separators into ``int``.

    - "190,000" -> 190000, "1,250,500" -> 1250500, "500" -> 500.
    - Grouping separators (comma, dot, spaces) are dropped, nothing else is
      tolerated: COP notifications never carry decimals.
    - Sign and positivity are *not* checked here, the caller decides.
    """
    if not isinstance(num_str, str):
        raise ValueError(f"Expected a string, got {type(num_str).__name__}")

    cleaned = _GROUPING_RE.sub("", num_str.strip())
    if not _DIGITS_RE.match(cleaned):
        raise ValueError(f"Could not convert '{num_str}' to an integer amount")
    return int(cleaned)


def to_decimal(value) -> Decimal:
    """Driver values (float on SQLite, Decimal on Postgres, None for empty SUM)."""
    if value is None:
        return Decimal(0)
    return Decimal(str(value))


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)
