"""Async engine and session factory."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from waitlist_referrals.core.settings import settings


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT/ROLLBACK TO behave as on PostgreSQL.

    The sqlite3 driver defers BEGIN until the first DML statement, which breaks
    nested transactions. Scoring and referral attribution rely on savepoints for
    their best-effort side effects.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record) -> None:  # noqa: ANN001
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn) -> None:  # noqa: ANN001
        conn.exec_driver_sql("BEGIN")

def build_engine(database_url: str | None = None, **kwargs) -> AsyncEngine:
    url = database_url or settings.database_url
    engine = create_async_engine(url, future=True, **kwargs)
    if engine.dialect.name == "sqlite":
        enable_sqlite_savepoints(engine)
    return engine

engine = build_engine()
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


__all__ = ["async_session", "build_engine", "enable_sqlite_savepoints", "engine"]
