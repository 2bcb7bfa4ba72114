import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession, async_sessionmaker, create_async_engine,
)

from .models import Base

DB_POOL_SIZE = int(os.environ.get("DB_POOL_SIZE", "10"))
# statements in flight at once; never more than the pool can serve
DB_GATE_LIMIT = int(os.environ.get("DB_GATE_LIMIT", str(DB_POOL_SIZE)))

_ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
}


def async_url(url: str) -> str:
    """sqlite:// and postgres:// URLs get their async driver; anything
    else is used as given."""
    scheme, sep, rest = url.partition("://")
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}{sep}{rest}"


def _sqlite_pragmas(dbapi_connection, _record) -> None:
    # webhook writes and ticket polls share one file
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.close()


class Database:
    """Engine, session factory and DB gate for one backend instance."""

    def __init__(self, url: str, *, gate_limit: int = DB_GATE_LIMIT) -> None:
        self.url = async_url(url)
        kw = {"pool_pre_ping": True}
        if self.url.startswith("postgresql+asyncpg://"):
            kw["pool_size"] = DB_POOL_SIZE
        self.engine = create_async_engine(self.url, **kw)
        if self.url.startswith("sqlite+aiosqlite://"):
            event.listen(self.engine.sync_engine, "connect", _sqlite_pragmas)
        self.sessions = async_sessionmaker(
            self.engine, class_=AsyncSession,
            expire_on_commit=False, autoflush=False,
        )
        self._gate = asyncio.Semaphore(max(1, gate_limit))

    @asynccontextmanager
    async def gated(self) -> AsyncIterator[None]:
        async with self._gate:
            yield

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
