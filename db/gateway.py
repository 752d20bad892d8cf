# db/gateway.py
"""The only component that talks to durable storage.

* Ingestion writes (:meth:`PersistenceGateway.insert_transaction`,
  :meth:`PersistenceGateway.insert_parse_failure`) either succeed or raise
  :class:`libs.errors.StorageError`. No fallback, no silent retry.
* ``transactions.webhook_id`` is UNIQUE in the schema itself. An insert
  rejected by that constraint surfaces as
  :class:`libs.errors.DuplicateDeliveryError` carrying the id of the row that
  won the race.
* Dashboard aggregates are the only reads served from
  :class:`libs.cache.TTLCache`. They are bounded by a timeout and fall back
  to the last known value, never to a zero aggregate.
"""
from __future__ import annotations

import asyncio
import datetime as _dt
import logging
import uuid
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models import ParseError, Transaction
from libs.cache import CacheKeys, TTLCache
from libs.decimal_utils import quantize_money, to_decimal
from libs.errors import DuplicateDeliveryError, StorageError
from libs.models import (
    CURRENCY,
    FailureReason,
    ParsedFact,
    ParseFailureFilter,
    ParseFailureRecord,
    Period,
    PeriodAggregate,
    TransactionFilter,
    TransactionRecord,
    TxnStatus,
)

__all__ = ["PersistenceGateway", "period_window"]

logger = logging.getLogger(__name__)


def _utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def period_window(period: Period, reference: _dt.date) -> tuple[_dt.date, _dt.date]:
    """Inclusive ``(start, end)`` of the calendar period containing *reference*."""
    if period is Period.DAILY:
        return reference, reference
    if period is Period.WEEKLY:
        start = reference - _dt.timedelta(days=reference.weekday())
        return start, start + _dt.timedelta(days=6)
    start = reference.replace(day=1)
    next_month = (start + _dt.timedelta(days=32)).replace(day=1)
    return start, next_month - _dt.timedelta(days=1)


class PersistenceGateway:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        cache: TTLCache,
        *,
        aggregate_timeout: float = 5.0,
        aggregate_ttl: Optional[float] = None,
        stale_ttl: float = 86_400.0,
        timezone: str = "America/Bogota",
    ) -> None:
        self._sessionmaker = sessionmaker
        self._cache = cache
        self._aggregate_timeout = aggregate_timeout
        self._aggregate_ttl = aggregate_ttl
        self._stale_ttl = stale_ttl
        self._tz = ZoneInfo(timezone)

    # ------------------------------------------------------------ transactions
    async def insert_transaction(
        self,
        fact: ParsedFact,
        *,
        raw_message: str,
        delivery_id: str,
    ) -> TransactionRecord:
        """Store a successfully parsed message with status ``processed``."""
        if not fact.success:
            raise ValueError("only successful parses become transactions")

        row = Transaction(
            id=uuid.uuid4(),
            amount=fact.amount,
            currency=CURRENCY,
            sender_name=fact.sender_name,
            account_number=fact.account_suffix,
            transaction_date=fact.occurred_on,
            transaction_time=fact.occurred_at,
            raw_message=raw_message,
            parsed_at=_utcnow(),
            webhook_id=delivery_id,
            status=TxnStatus.PROCESSED.value,
        )
        try:
            async with self._sessionmaker() as session:
                session.add(row)
                await session.commit()
        except IntegrityError as exc:
            existing = await self.find_transaction_by_delivery_id(delivery_id)
            if existing is None:
                # some other constraint (amount > 0, status) - not a race
                raise StorageError("Failed to store transaction") from exc
            logger.info(
                "Unique constraint rejected delivery %s, stored as %s",
                delivery_id,
                existing.id,
            )
            raise DuplicateDeliveryError(delivery_id, existing.id) from exc
        except SQLAlchemyError as exc:
            raise StorageError("Failed to store transaction") from exc

        self.invalidate_aggregates(fact.occurred_on)
        return TransactionRecord.model_validate(row)

    async def find_transaction_by_delivery_id(self, delivery_id: str) -> Optional[TransactionRecord]:
        """``None`` means *not found*; any storage failure raises StorageError."""
        try:
            async with self._sessionmaker() as session:
                row = await session.scalar(
                    select(Transaction).where(Transaction.webhook_id == delivery_id)
                )
        except SQLAlchemyError as exc:
            raise StorageError("Database connection error") from exc
        return TransactionRecord.model_validate(row) if row is not None else None

    async def list_transactions(self, filters: TransactionFilter) -> list[TransactionRecord]:
        stmt = select(Transaction).order_by(
            Transaction.transaction_date.desc(),
            Transaction.created_at.desc(),
        )
        if filters.start_date is not None:
            stmt = stmt.where(Transaction.transaction_date >= filters.start_date)
        if filters.end_date is not None:
            stmt = stmt.where(Transaction.transaction_date <= filters.end_date)
        if filters.status is not None:
            stmt = stmt.where(Transaction.status == filters.status.value)
        stmt = stmt.limit(filters.limit).offset(filters.offset)

        try:
            async with self._sessionmaker() as session:
                rows = (await session.scalars(stmt)).all()
        except SQLAlchemyError as exc:
            raise StorageError("Database connection error") from exc
        return [TransactionRecord.model_validate(r) for r in rows]

    async def update_transaction_status(
        self, transaction_id: uuid.UUID, status: TxnStatus
    ) -> bool:
        """Status backfill for recovery tooling. Returns False for unknown ids."""
        try:
            async with self._sessionmaker() as session:
                row = await session.get(Transaction, transaction_id)
                if row is None:
                    return False
                row.status = status.value
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to update transaction") from exc
        logger.warning("Transaction %s status backfilled to %s", transaction_id, status.value)
        self.invalidate_aggregates(row.transaction_date)
        return True

    # ------------------------------------------------------------ parse errors
    async def insert_parse_failure(
        self,
        *,
        raw_message: str,
        reason: FailureReason,
        delivery_id: str,
    ) -> ParseFailureRecord:
        row = ParseError(
            id=uuid.uuid4(),
            raw_message=raw_message,
            error_reason=reason.value,
            webhook_id=delivery_id,
            occurred_at=_utcnow(),
            resolved=False,
        )
        try:
            async with self._sessionmaker() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to store parse failure") from exc
        return ParseFailureRecord.model_validate(row)

    async def list_parse_failures(self, filters: ParseFailureFilter) -> list[ParseFailureRecord]:
        stmt = select(ParseError).order_by(ParseError.occurred_at.desc())
        if filters.resolved is not None:
            stmt = stmt.where(ParseError.resolved == filters.resolved)
        stmt = stmt.limit(filters.limit).offset(filters.offset)
        try:
            async with self._sessionmaker() as session:
                rows = (await session.scalars(stmt)).all()
        except SQLAlchemyError as exc:
            raise StorageError("Database connection error") from exc
        return [ParseFailureRecord.model_validate(r) for r in rows]

    async def resolve_parse_failure(self, failure_id: uuid.UUID) -> Optional[ParseFailureRecord]:
        try:
            async with self._sessionmaker() as session:
                row = await session.get(ParseError, failure_id)
                if row is None:
                    return None
                row.resolved = True
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to resolve parse failure") from exc
        return ParseFailureRecord.model_validate(row)

    # ------------------------------------------------------------- aggregates
    def today(self) -> _dt.date:
        return _dt.datetime.now(self._tz).date()

    async def get_period_aggregate(
        self, period: Period, reference: Optional[_dt.date] = None
    ) -> PeriodAggregate:
        start, end = period_window(period, reference or self.today())
        key = CacheKeys.period(period.value, start)
        return await self._cached_aggregate(key, start, end, period)

    async def get_aggregate(self, start: _dt.date, end: _dt.date) -> PeriodAggregate:
        if start > end:
            raise ValueError("start must not be after end")
        return await self._cached_aggregate(CacheKeys.date_range(start, end), start, end, None)

    def invalidate_aggregates(self, day: _dt.date) -> None:
        """Evict every fresh aggregate whose window contains *day*.

        Stale copies are kept: they are only ever served on a timeout.
        """
        for period in Period:
            start, _ = period_window(period, day)
            self._cache.delete(CacheKeys.period(period.value, start))
        for key in self._cache.keys(CacheKeys.RANGE_PREFIX):
            start, end = CacheKeys.range_bounds(key)
            if start <= day <= end:
                self._cache.delete(key)

    async def _cached_aggregate(
        self,
        key: str,
        start: _dt.date,
        end: _dt.date,
        period: Optional[Period],
    ) -> PeriodAggregate:
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        try:
            aggregate = await asyncio.wait_for(
                self._query_aggregate(start, end, period),
                timeout=self._aggregate_timeout,
            )
        except asyncio.TimeoutError as exc:
            stale = self._cache.get(CacheKeys.stale(key))
            if stale is None:
                raise StorageError("Aggregate query timed out") from exc
            logger.warning(
                "Aggregate %s timed out after %.1fs, serving value from %s",
                key,
                self._aggregate_timeout,
                stale.last_updated.isoformat(),
            )
            return stale

        self._cache.set(key, aggregate, ttl=self._aggregate_ttl)
        self._cache.set(CacheKeys.stale(key), aggregate, ttl=self._stale_ttl)
        return aggregate

    async def _query_aggregate(
        self,
        start: _dt.date,
        end: _dt.date,
        period: Optional[Period],
    ) -> PeriodAggregate:
        stmt = select(
            func.coalesce(func.sum(Transaction.amount), 0),
            func.count(Transaction.id),
        ).where(
            Transaction.transaction_date >= start,
            Transaction.transaction_date <= end,
            Transaction.status == TxnStatus.PROCESSED.value,
        )
        try:
            async with self._sessionmaker() as session:
                total, count = (await session.execute(stmt)).one()
        except SQLAlchemyError as exc:
            raise StorageError("Database connection error") from exc

        total = quantize_money(to_decimal(total))
        average = quantize_money(total / count) if count else quantize_money(to_decimal(0))
        return PeriodAggregate(
            period=period,
            period_start=start,
            period_end=end,
            total_amount=total,
            transaction_count=count,
            average_amount=average,
            last_updated=_utcnow(),
        )

    # ----------------------------------------------------------------- health
    async def ping(self) -> None:
        try:
            async with self._sessionmaker() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise StorageError("Database connection error") from exc
