# libs/regexes.py
"""Single point of truth for the transfer-notification pattern and the helper
that converts a bank SMS into :class:`libs.models.ParsedFact`.

Only one message family is accepted: the Bancolombia "transfer received"
notification::

    Bancolombia: Recibiste una transferencia por $190,000 de MARIA CUBAQUE
    en tu cuenta **7251, el 04/09/2025 a las 08:06

The structural match runs first. Field checks run only after it succeeds,
in a fixed order, and the first failing check decides the reason.
"""
from __future__ import annotations

import re
from datetime import date, time
from typing import Match, Optional

from libs.decimal_utils import parse_grouped_amount
from libs.models import ACCOUNT_MASK, FailureReason, ParsedFact

# ---------------------------------------------------------------------------
# Regex patterns
# ---------------------------------------------------------------------------
AMOUNT_RE = r"\$(?P<amount>[0-9,]+)"
SENDER_RE = r"(?P<sender>[A-ZÁÉÍÓÚÑÜ\s]+)"
ACCOUNT_RE = r"\*\*(?P<account>[0-9]{4})"
DATE_RE = r"(?P<date>[0-9]{2}/[0-9]{2}/[0-9]{4})"
TIME_RE = r"(?P<time>[0-9]{2}:[0-9]{2})"

TRANSFER_RECEIVED_RE = re.compile(
    rf"""
    Bancolombia:\s*
    Recibiste\ una\ transferencia\ por\ {AMOUNT_RE}
    \ de\ {SENDER_RE}
    \ en\ tu\ cuenta\ {ACCOUNT_RE},
    \ el\ {DATE_RE}
    \ a\ las\ {TIME_RE}
    """,
    re.VERBOSE,
)

_ACCOUNT_SHAPE_RE = re.compile(r"^[0-9]{4}$")
_TIME_SHAPE_RE = re.compile(r"^(?P<hour>[0-9]{2}):(?P<minute>[0-9]{2})$")

MIN_YEAR = 1900


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def parse_sms(raw_text: str) -> ParsedFact:
    """Recognise ``raw_text`` as a transfer notification.

    Never raises: every problem is reported as ``ParsedFact(success=False)``
    with one :class:`FailureReason`.
    """
    match = TRANSFER_RECEIVED_RE.search(raw_text) if isinstance(raw_text, str) else None
    if match is None:
        return ParsedFact.failed(FailureReason.PATTERN_MISMATCH)
    return _build_fact(match)


def _build_fact(m: Match[str]) -> ParsedFact:
    # 1. amount
    amount = _to_amount(m["amount"])
    if amount is None:
        return ParsedFact.failed(FailureReason.INVALID_AMOUNT)

    # 2. sender - outer whitespace only, inner runs are kept as-is
    sender_name = m["sender"].strip()
    if not sender_name:
        return ParsedFact.failed(FailureReason.EMPTY_SENDER_NAME)

    # 3. account suffix
    account = m["account"]
    if not _ACCOUNT_SHAPE_RE.match(account):
        return ParsedFact.failed(FailureReason.PATTERN_MISMATCH)

    # 4. date (DD/MM/YYYY)
    occurred_on = _to_date(m["date"])
    if occurred_on is None:
        return ParsedFact.failed(FailureReason.INVALID_DATE)

    # 5. time (HH:MM)
    occurred_at = _to_time(m["time"])
    if occurred_at is None:
        return ParsedFact.failed(FailureReason.INVALID_TIME)

    return ParsedFact.ok(
        amount=amount,
        sender_name=sender_name,
        account_suffix=f"{ACCOUNT_MASK}{account}",
        occurred_on=occurred_on,
        occurred_at=occurred_at,
    )


# ---------------------------------------------------------------------------
# Utilities
# ---------------------------------------------------------------------------
def _to_amount(amount_str: str) -> Optional[int]:
    try:
        amount = parse_grouped_amount(amount_str)
    except ValueError:
        return None
    return amount if amount > 0 else None


def _to_date(date_str: str) -> Optional[date]:
    """Day-first date; impossible calendar days are rejected, never rolled over."""
    day, month, year = (int(part) for part in date_str.split("/"))
    if not (1 <= day <= 31) or not (1 <= month <= 12) or year < MIN_YEAR:
        return None
    try:
        parsed = date(year, month, day)
    except ValueError:  # e.g. 29/02/2025, 31/04/2024
        return None
    if (parsed.day, parsed.month, parsed.year) != (day, month, year):
        return None
    return parsed


def _to_time(time_str: str) -> Optional[time]:
    m = _TIME_SHAPE_RE.match(time_str)
    if m is None:
        return None
    hour, minute = int(m["hour"]), int(m["minute"])
    if not (0 <= hour <= 23) or not (0 <= minute <= 59):
        return None
    return time(hour, minute)


__all__ = [
    "TRANSFER_RECEIVED_RE",
    "parse_sms",
]
