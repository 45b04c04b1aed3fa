"""Async engine and session factories."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from heist_api.core.settings import settings


def _engine_options(database_url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.database_echo}
    if not database_url.startswith("sqlite"):
        options["pool_size"] = settings.database_pool_size
        options["pool_timeout"] = settings.heist_transaction_max_wait_seconds
        options["pool_pre_ping"] = True
    return options


def configure_sqlite_transactions(engine: AsyncEngine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINTs nest inside the outer transaction."""

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):  # noqa: ANN001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):  # noqa: ANN001
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str | None = None, **overrides: Any) -> AsyncEngine:
    url = database_url or settings.database_url
    options = _engine_options(url)
    options.update(overrides)
    engine = create_async_engine(url, **options)
    # In-memory databases share one connection between sessions, so they keep
    # the driver's implicit BEGIN.
    if engine.dialect.name == "sqlite" and ":memory:" not in url:
        configure_sqlite_transactions(engine)
    return engine


engine = build_engine()
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a request-scoped session."""

    async with async_session() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """FastAPI dependency exposing the factory for components that own their transactions."""

    return async_session
