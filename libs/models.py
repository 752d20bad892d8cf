# libs/models.py
"""Domain models shared by the parser, the persistence gateway and the API.

Levels
------
1. **ParsedFact** - result of the deterministic regex parse of one SMS.
   Either fully populated (``success=True``) or carrying only a
   :class:`FailureReason`.
2. **TransactionRecord / ParseFailureRecord** - read models of the two
   durable tables, returned by :mod:`db.gateway`.
3. **PeriodAggregate** - sum / count / average over a date window, the
   only thing the dashboard cache ever holds.

Design note: Pydantic v2 (BaseModel) everywhere, so that every component
speaks the same types and JSON-dumps them with ``model_dump(by_alias=True)``.
"""
from __future__ import annotations

import datetime as _dt
import uuid
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

__all__ = [
    "CURRENCY",
    "ACCOUNT_MASK",
    "FailureReason",
    "TxnStatus",
    "Period",
    "ParsedFact",
    "TransactionRecord",
    "ParseFailureRecord",
    "PeriodAggregate",
    "TransactionFilter",
    "ParseFailureFilter",
]

CURRENCY = "COP"
ACCOUNT_MASK = "**"


class FailureReason(str, Enum):
    """Why a message could not be turned into a transaction."""

    PATTERN_MISMATCH = "pattern_mismatch"
    INVALID_AMOUNT = "invalid_amount"
    EMPTY_SENDER_NAME = "empty_sender_name"
    INVALID_DATE = "invalid_date"
    INVALID_TIME = "invalid_time"


class TxnStatus(str, Enum):
    """Lifecycle of a stored transaction."""

    PROCESSED = "processed"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class Period(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ParsedFact(BaseModel):
    """Normalised output of :func:`libs.regexes.parse_sms`."""

    success: bool
    failure_reason: Optional[FailureReason] = None

    amount: Optional[int] = Field(None, gt=0)
    sender_name: Optional[str] = Field(None, min_length=1)
    account_suffix: Optional[str] = Field(None, pattern=r"^\*\*[0-9]{4}$")
    occurred_on: Optional[_dt.date] = None
    occurred_at: Optional[_dt.time] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_shape(self) -> "ParsedFact":
        fields = (
            self.amount,
            self.sender_name,
            self.account_suffix,
            self.occurred_on,
            self.occurred_at,
        )
        if self.success:
            if self.failure_reason is not None or any(f is None for f in fields):
                raise ValueError("successful parse must populate every field")
        elif self.failure_reason is None or any(f is not None for f in fields):
            raise ValueError("failed parse carries only failure_reason")
        return self

    @classmethod
    def ok(
        cls,
        *,
        amount: int,
        sender_name: str,
        account_suffix: str,
        occurred_on: _dt.date,
        occurred_at: _dt.time,
    ) -> "ParsedFact":
        return cls(
            success=True,
            amount=amount,
            sender_name=sender_name,
            account_suffix=account_suffix,
            occurred_on=occurred_on,
            occurred_at=occurred_at,
        )

    @classmethod
    def failed(cls, reason: FailureReason) -> "ParsedFact":
        return cls(success=False, failure_reason=reason)


class TransactionRecord(_CamelModel):
    """Row of the ``transactions`` table as seen by callers."""

    id: uuid.UUID
    amount: Decimal
    currency: str = CURRENCY
    sender_name: str
    account_number: str
    transaction_date: _dt.date
    transaction_time: _dt.time
    raw_message: str
    parsed_at: _dt.datetime
    webhook_id: str
    status: TxnStatus


class ParseFailureRecord(_CamelModel):
    """Row of the ``parse_errors`` table, reviewed by a human later."""

    id: uuid.UUID
    raw_message: str
    error_reason: str
    webhook_id: str
    occurred_at: _dt.datetime
    resolved: bool = False


class PeriodAggregate(_CamelModel):
    period: Optional[Period] = None  # None for an arbitrary date range
    period_start: _dt.date
    period_end: _dt.date
    total_amount: Decimal
    transaction_count: int
    average_amount: Decimal
    last_updated: _dt.datetime


class TransactionFilter(BaseModel):
    start_date: Optional[_dt.date] = None
    end_date: Optional[_dt.date] = None
    status: Optional[TxnStatus] = None
    limit: int = Field(50, ge=1)
    offset: int = Field(0, ge=0)


class ParseFailureFilter(BaseModel):
    resolved: Optional[bool] = None
    limit: int = Field(50, ge=1)
    offset: int = Field(0, ge=0)
