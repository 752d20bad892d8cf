# tests/test_gateway.py
import asyncio
import datetime as dt
import uuid
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from db.gateway import PersistenceGateway, period_window
from libs.cache import CacheKeys, TTLCache
from libs.errors import DuplicateDeliveryError, StorageError
from libs.models import (
    FailureReason,
    ParsedFact,
    ParseFailureFilter,
    Period,
    TransactionFilter,
    TxnStatus,
)
from libs.regexes import parse_sms

pytestmark = pytest.mark.asyncio


def fact(amount: int = 190000, day: dt.date = dt.date(2025, 9, 4), sender: str = "MARIA CUBAQUE") -> ParsedFact:
    return ParsedFact.ok(
        amount=amount,
        sender_name=sender,
        account_suffix="**7251",
        occurred_on=day,
        occurred_at=dt.time(8, 6),
    )


@pytest.fixture
def broken_gateway(cache: TTLCache) -> PersistenceGateway:
    """Gateway whose database cannot even be opened."""
    engine = create_async_engine("sqlite+aiosqlite:////nonexistent-dir/sms.db")
    return PersistenceGateway(async_sessionmaker(engine), cache, aggregate_timeout=1.0)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------
async def test_insert_and_find_by_delivery_id(gateway: PersistenceGateway, make_sms):
    raw = make_sms()
    record = await gateway.insert_transaction(parse_sms(raw), raw_message=raw, delivery_id="wh_1")

    assert record.amount == Decimal(190000)
    assert record.currency == "COP"
    assert record.account_number == "**7251"
    assert record.status is TxnStatus.PROCESSED
    assert record.raw_message == raw

    found = await gateway.find_transaction_by_delivery_id("wh_1")
    assert found is not None
    assert found.id == record.id
    assert found.sender_name == "MARIA CUBAQUE"
    assert found.transaction_date == dt.date(2025, 9, 4)
    assert found.transaction_time == dt.time(8, 6)

    assert await gateway.find_transaction_by_delivery_id("wh_unknown") is None


async def test_second_insert_for_same_delivery_is_refused(gateway: PersistenceGateway):
    first = await gateway.insert_transaction(fact(), raw_message="sms", delivery_id="wh_dup")

    with pytest.raises(DuplicateDeliveryError) as excinfo:
        await gateway.insert_transaction(fact(amount=5), raw_message="other", delivery_id="wh_dup")

    assert excinfo.value.transaction_id == first.id
    assert excinfo.value.delivery_id == "wh_dup"
    rows = await gateway.list_transactions(TransactionFilter())
    assert [r.id for r in rows] == [first.id]
    assert rows[0].amount == Decimal(190000)


async def test_failed_parse_cannot_be_stored(gateway: PersistenceGateway):
    with pytest.raises(ValueError):
        await gateway.insert_transaction(
            ParsedFact.failed(FailureReason.INVALID_DATE), raw_message="x", delivery_id="wh"
        )


async def test_list_transactions_filters_and_orders(gateway: PersistenceGateway):
    days = [dt.date(2025, 9, 1), dt.date(2025, 9, 3), dt.date(2025, 9, 2), dt.date(2025, 8, 31)]
    for i, day in enumerate(days):
        await gateway.insert_transaction(fact(amount=1000 + i, day=day), raw_message="m", delivery_id=f"wh_{i}")

    everything = await gateway.list_transactions(TransactionFilter())
    assert [r.transaction_date for r in everything] == sorted(days, reverse=True)

    september = await gateway.list_transactions(
        TransactionFilter(start_date=dt.date(2025, 9, 1), end_date=dt.date(2025, 9, 2))
    )
    assert [r.transaction_date for r in september] == [dt.date(2025, 9, 2), dt.date(2025, 9, 1)]

    page = await gateway.list_transactions(TransactionFilter(limit=2, offset=1))
    assert [r.transaction_date for r in page] == [dt.date(2025, 9, 2), dt.date(2025, 9, 1)]


async def test_status_backfill(gateway: PersistenceGateway):
    record = await gateway.insert_transaction(fact(), raw_message="m", delivery_id="wh_1")

    assert await gateway.update_transaction_status(record.id, TxnStatus.FAILED) is True
    assert await gateway.update_transaction_status(uuid.uuid4(), TxnStatus.FAILED) is False

    failed = await gateway.list_transactions(TransactionFilter(status=TxnStatus.FAILED))
    assert [r.id for r in failed] == [record.id]
    assert await gateway.list_transactions(TransactionFilter(status=TxnStatus.PROCESSED)) == []


async def test_storage_failures_surface_as_storage_error(broken_gateway: PersistenceGateway):
    with pytest.raises(StorageError, match="Database connection error"):
        await broken_gateway.find_transaction_by_delivery_id("wh_1")
    with pytest.raises(StorageError, match="Failed to store transaction"):
        await broken_gateway.insert_transaction(fact(), raw_message="m", delivery_id="wh_1")
    with pytest.raises(StorageError, match="Failed to store parse failure"):
        await broken_gateway.insert_parse_failure(
            raw_message="m", reason=FailureReason.PATTERN_MISMATCH, delivery_id="wh_1"
        )
    with pytest.raises(StorageError):
        await broken_gateway.ping()


async def test_ping(gateway: PersistenceGateway):
    await gateway.ping()


# ---------------------------------------------------------------------------
# Parse failures
# ---------------------------------------------------------------------------
async def test_parse_failures_are_listed_and_resolved(gateway: PersistenceGateway):
    first = await gateway.insert_parse_failure(
        raw_message="hola", reason=FailureReason.PATTERN_MISMATCH, delivery_id="wh_a"
    )
    second = await gateway.insert_parse_failure(
        raw_message="Bancolombia ... $0", reason=FailureReason.INVALID_AMOUNT, delivery_id="wh_b"
    )
    assert first.resolved is False
    assert second.error_reason == "invalid_amount"

    resolved = await gateway.resolve_parse_failure(first.id)
    assert resolved is not None
    assert resolved.resolved is True
    assert await gateway.resolve_parse_failure(uuid.uuid4()) is None

    open_ = await gateway.list_parse_failures(ParseFailureFilter(resolved=False))
    assert [r.webhook_id for r in open_] == ["wh_b"]
    done = await gateway.list_parse_failures(ParseFailureFilter(resolved=True))
    assert [r.webhook_id for r in done] == ["wh_a"]
    assert len(await gateway.list_parse_failures(ParseFailureFilter())) == 2


async def test_same_delivery_may_fail_parsing_more_than_once(gateway: PersistenceGateway):
    for _ in range(2):
        await gateway.insert_parse_failure(
            raw_message="hola", reason=FailureReason.PATTERN_MISMATCH, delivery_id="wh_same"
        )
    assert len(await gateway.list_parse_failures(ParseFailureFilter())) == 2


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "period, reference, expected",
    [
        (Period.DAILY, dt.date(2025, 9, 4), (dt.date(2025, 9, 4), dt.date(2025, 9, 4))),
        (Period.WEEKLY, dt.date(2025, 9, 4), (dt.date(2025, 9, 1), dt.date(2025, 9, 7))),
        (Period.WEEKLY, dt.date(2025, 9, 1), (dt.date(2025, 9, 1), dt.date(2025, 9, 7))),
        (Period.WEEKLY, dt.date(2025, 9, 7), (dt.date(2025, 9, 1), dt.date(2025, 9, 7))),
        (Period.MONTHLY, dt.date(2024, 2, 10), (dt.date(2024, 2, 1), dt.date(2024, 2, 29))),
        (Period.MONTHLY, dt.date(2025, 12, 31), (dt.date(2025, 12, 1), dt.date(2025, 12, 31))),
    ],
)
async def test_period_window(period, reference, expected):
    assert period_window(period, reference) == expected


async def test_period_aggregate_counts_processed_only(gateway: PersistenceGateway):
    await gateway.insert_transaction(fact(190000), raw_message="m", delivery_id="wh_1")
    await gateway.insert_transaction(fact(50500), raw_message="m", delivery_id="wh_2")
    other = await gateway.insert_transaction(fact(999), raw_message="m", delivery_id="wh_3")
    await gateway.insert_transaction(fact(7, day=dt.date(2025, 9, 5)), raw_message="m", delivery_id="wh_4")
    await gateway.update_transaction_status(other.id, TxnStatus.FAILED)

    daily = await gateway.get_period_aggregate(Period.DAILY, dt.date(2025, 9, 4))

    assert daily.period is Period.DAILY
    assert daily.transaction_count == 2
    assert daily.total_amount == Decimal("240500.00")
    assert daily.average_amount == Decimal("120250.00")

    weekly = await gateway.get_period_aggregate(Period.WEEKLY, dt.date(2025, 9, 4))
    assert weekly.transaction_count == 3
    assert (weekly.period_start, weekly.period_end) == (dt.date(2025, 9, 1), dt.date(2025, 9, 7))


async def test_empty_window_is_zero(gateway: PersistenceGateway):
    agg = await gateway.get_aggregate(dt.date(2030, 1, 1), dt.date(2030, 1, 31))

    assert agg.period is None
    assert agg.transaction_count == 0
    assert agg.total_amount == Decimal("0.00")
    assert agg.average_amount == Decimal("0.00")


async def test_reversed_range_is_rejected(gateway: PersistenceGateway):
    with pytest.raises(ValueError):
        await gateway.get_aggregate(dt.date(2025, 9, 2), dt.date(2025, 9, 1))


async def test_insert_invalidates_cached_aggregates(gateway: PersistenceGateway, cache: TTLCache):
    september = (dt.date(2025, 9, 1), dt.date(2025, 9, 30))
    october = (dt.date(2025, 10, 1), dt.date(2025, 10, 31))
    await gateway.insert_transaction(fact(100), raw_message="m", delivery_id="wh_1")

    assert (await gateway.get_period_aggregate(Period.DAILY, dt.date(2025, 9, 4))).transaction_count == 1
    assert (await gateway.get_aggregate(*september)).transaction_count == 1
    await gateway.get_aggregate(*october)

    await gateway.insert_transaction(fact(200), raw_message="m", delivery_id="wh_2")

    assert cache.get(CacheKeys.date_range(*october)) is not None
    assert cache.get(CacheKeys.date_range(*september)) is None
    assert cache.get(CacheKeys.stale(CacheKeys.date_range(*september))) is not None
    assert (await gateway.get_period_aggregate(Period.DAILY, dt.date(2025, 9, 4))).transaction_count == 2
    assert (await gateway.get_aggregate(*september)).total_amount == Decimal("300.00")


async def test_fresh_aggregate_is_served_from_cache(gateway: PersistenceGateway, mocker):
    first = await gateway.get_period_aggregate(Period.MONTHLY, dt.date(2025, 9, 4))
    spy = mocker.spy(gateway, "_query_aggregate")

    second = await gateway.get_period_aggregate(Period.MONTHLY, dt.date(2025, 9, 20))

    assert second == first
    spy.assert_not_called()


async def test_timeout_serves_last_known_aggregate(sessionmaker, cache: TTLCache, clock, monkeypatch):
    gateway = PersistenceGateway(sessionmaker, cache, aggregate_timeout=0.05, aggregate_ttl=60, stale_ttl=3600)
    await gateway.insert_transaction(fact(100), raw_message="m", delivery_id="wh_1")
    known = await gateway.get_period_aggregate(Period.DAILY, dt.date(2025, 9, 4))

    async def hanging_query(*args, **kwargs):
        await asyncio.sleep(5)

    monkeypatch.setattr(gateway, "_query_aggregate", hanging_query)
    clock.advance(120)  # fresh copy expired, stale copy still there

    served = await gateway.get_period_aggregate(Period.DAILY, dt.date(2025, 9, 4))

    assert served == known
    assert served.transaction_count == 1


async def test_timeout_without_known_value_is_an_error(sessionmaker, cache: TTLCache, monkeypatch):
    gateway = PersistenceGateway(sessionmaker, cache, aggregate_timeout=0.05)

    async def hanging_query(*args, **kwargs):
        await asyncio.sleep(5)

    monkeypatch.setattr(gateway, "_query_aggregate", hanging_query)

    with pytest.raises(StorageError, match="timed out"):
        await gateway.get_period_aggregate(Period.DAILY, dt.date(2025, 9, 4))
