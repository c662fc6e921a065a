"""
Database module for ugcpipe.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging

from ugcpipe.db.engine import async_session, build_engine, build_session_factory, engine, shutdown
from ugcpipe.db.models import Base, Job, PipelineBatch, ReferenceImage, MusicTrack

logger = logging.getLogger(__name__)


async def init_database(db_engine=None):
    """Initialize database schema on first run (idempotent)."""
    db_engine = db_engine or engine
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready (%s)", db_engine.url.render_as_string(hide_password=True))


__all__ = [
    "Base",
    "Job",
    "PipelineBatch",
    "ReferenceImage",
    "MusicTrack",
    "engine",
    "async_session",
    "build_engine",
    "build_session_factory",
    "shutdown",
    "init_database",
]
