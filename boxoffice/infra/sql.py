import os
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, Callable, Dict, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

_ASYNC_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

# applied to every new SQLite connection
_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    # writers queue on the lock instead of failing with SQLITE_BUSY
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    "PRAGMA foreign_keys=ON;",
)


def to_async_url(url: str) -> str:
    for plain, driver in _ASYNC_DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def is_postgres(db: AsyncSession) -> bool:
    return db.get_bind().dialect.name == "postgresql"


def _pool_options(db_url: str) -> Dict[str, int]:
    if not db_url.startswith("postgresql+asyncpg://"):
        return {}
    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "30")),
    }


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in _SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


# DB-GATE
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _gate_limit(pool_size: Optional[int]) -> int:
    # sqlite has no pool to size against
    default = pool_size if pool_size is not None else 10
    return max(1, int(os.getenv("DB_GATE_LIMIT", default)))


def make_async_engine(database_url: str):
    """
    Returns (engine, SessionAsync, db_gate, gated). `gated()` bounds the
    number of coroutines holding a connection at once.
    """
    db_url = to_async_url(database_url)
    pool = _pool_options(db_url)
    engine = create_async_engine(
        db_url, future=True, pool_pre_ping=True, **pool
    )
    if engine.dialect.name == "sqlite":
        _install_sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    db_gate = asyncio.Semaphore(_gate_limit(pool.get("pool_size")))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, db_gate, gated


Gated = Callable[[], AsyncContextManager[None]]


@dataclass
class GatedAsyncSession:
    """A request's session plus the engine gate every query goes through."""
    session: AsyncSession
    gated: Gated
