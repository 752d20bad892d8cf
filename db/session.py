from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from libs.config import Settings


def create_engine(settings: Settings) -> AsyncEngine:
    url = settings.database_url_async
    if url.startswith("postgresql"):
        return create_async_engine(url, pool_size=10, pool_pre_ping=True, echo=False)
    return create_async_engine(url, echo=False)


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)
