# db/migrations/env.py
"""Alembic environment for the ledger schema.

The database URL never lives in ``alembic.ini``: it comes from
:class:`libs.config.Settings`, or from ``alembic -x dsn=<url> ...`` when a
one-off target is needed. SQLite targets get batch mode so that
constraint changes can be replayed there as well.
"""
import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy import pool
from sqlalchemy.engine import Connection, make_url
from sqlalchemy.ext.asyncio import create_async_engine

from db.models import Base
from libs.config import get_settings

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _x_dsn():
    return context.get_x_argument(as_dictionary=True).get("dsn")


def _configure(dialect_name: str, **kwargs) -> None:
    context.configure(
        target_metadata=target_metadata,
        compare_type=True,
        render_as_batch=dialect_name == "sqlite",
        **kwargs,
    )


def run_migrations_offline() -> None:
    """Emit SQL to stdout through the sync driver."""
    dsn = _x_dsn()
    url = make_url(dsn) if dsn else make_url(get_settings().database_url)
    url = url.set(drivername=url.get_backend_name())
    _configure(
        url.get_backend_name(),
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    _configure(connection.dialect.name, connection=connection)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(_x_dsn() or get_settings().database_url_async, poolclass=pool.NullPool)
    async with engine.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
