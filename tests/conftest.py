# tests/conftest.py
from typing import Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from db.gateway import PersistenceGateway
from db.models import Base
from libs.cache import TTLCache


class FakeClock:
    """Monotonic clock the tests move by hand."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def render_transfer_sms(
    amount: str = "190,000",
    sender: str = "MARIA CUBAQUE",
    account: str = "7251",
    date: str = "04/09/2025",
    time: str = "08:06",
) -> str:
    return (
        f"Bancolombia: Recibiste una transferencia por ${amount} de {sender} "
        f"en tu cuenta **{account}, el {date} a las {time}"
    )


@pytest.fixture
def make_sms() -> Callable[..., str]:
    """Factory for transfer notifications; every field can be overridden."""
    return render_transfer_sms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> TTLCache:
    return TTLCache(default_ttl=60.0, clock=clock)


@pytest_asyncio.fixture
async def sessionmaker():
    """In-memory SQLite shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def gateway(sessionmaker, cache: TTLCache) -> PersistenceGateway:
    return PersistenceGateway(
        sessionmaker,
        cache,
        aggregate_timeout=0.5,
        aggregate_ttl=60.0,
        stale_ttl=3_600.0,
        timezone="America/Bogota",
    )
