"""
Ledger database.

Owns the async engine behind the LedgerStore. Postgres runs through asyncpg
with a bounded pool; SQLite (local runs and tests) runs through aiosqlite
with a busy timeout, so a second writer waits for the lock instead of failing.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from . import config


class Base(DeclarativeBase):
    pass


def normalize_async_url(url: str) -> str:
    for prefix, driver in (
        ("sqlite://", "sqlite+aiosqlite://"),
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
    ):
        if url.startswith(prefix):
            return driver + url[len(prefix):]
    return url


class Database:
    def __init__(self, database_url: str, pool_size: int = config.DB_POOL_SIZE,
                 max_overflow: int = config.DB_MAX_OVERFLOW,
                 busy_timeout_ms: int = config.SQLITE_BUSY_TIMEOUT_MS):
        self.url = normalize_async_url(database_url)
        self.is_sqlite = self.url.startswith("sqlite+aiosqlite://")

        engine_options = {"echo": False, "pool_pre_ping": True}
        if not self.is_sqlite:
            engine_options.update(pool_size=pool_size, max_overflow=max_overflow)
        self.engine = create_async_engine(self.url, **engine_options)

        if self.is_sqlite:
            @event.listens_for(self.engine.sync_engine, "connect")
            def _sqlite_pragmas(dbapi_connection, _):
                cur = dbapi_connection.cursor()
                cur.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
                cur.execute("PRAGMA foreign_keys=ON;")
                cur.close()

        self.session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        """One round trip to the ledger, for the readiness check."""
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def close(self):
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """One unit of work. Commits when the block exits cleanly."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
