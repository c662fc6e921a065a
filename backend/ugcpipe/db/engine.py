"""
Async engine and session factory for the job store.

``build_engine`` turns a database URL into an AsyncEngine; SQLite URLs get
the crash-safety PRAGMAs on every new connection. The module-level
``engine`` / ``async_session`` pair is built from settings and is what the
API and CLI use; tests build their own pair against a temporary file.
"""
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ugcpipe.config import settings

SQLITE_BUSY_TIMEOUT_MS = 5000


def configure_sqlite_pragmas(dbapi_conn, connection_record):
    """
    Per-connection SQLite settings.

    - WAL mode: concurrent readers while runners write progress
    - FULL synchronous: a persisted request handle survives power loss
    - Foreign keys: batch deletion detaches jobs via ON DELETE SET NULL
    - Busy timeout: sibling jobs in a batch wait for each other's writes
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


def build_engine(database_url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """Create an AsyncEngine for ``database_url`` (defaults to settings)."""
    db_engine = create_async_engine(database_url or settings.storage.database_url, echo=echo)
    if db_engine.dialect.name == "sqlite":
        # aiosqlite: listener goes on the sync engine
        event.listens_for(db_engine.sync_engine, "connect")(configure_sqlite_pragmas)
    return db_engine


def build_session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Snapshots are read after commit; keep attributes loaded
    return async_sessionmaker(db_engine, expire_on_commit=False, class_=AsyncSession)


engine = build_engine()
async_session = build_session_factory(engine)


async def shutdown():
    """Dispose of engine and close all connections."""
    await engine.dispose()
