import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy import event

from iptv_sync.config import settings
from iptv_sync.models import Base

logger = logging.getLogger(__name__)

# Engine and session factory - initialized in init_db() during startup
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create async session factory from engine"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory (initialized in init_db)"""
    global _session_factory
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() during startup.")
    return _session_factory


def build_engine(database_path: str, **engine_kwargs) -> AsyncEngine:
    """Create an async SQLite engine with the configured pragmas."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{database_path}",
        echo=False,
        future=True,
        pool_pre_ping=True,
        connect_args={"timeout": 30, "check_same_thread": False},
        **engine_kwargs,
    )

    def configure_sqlite(dbapi_conn, _):
        """Configure SQLite connection parameters"""
        cursor = dbapi_conn.cursor()
        cursor.execute(f"PRAGMA journal_mode = {settings.sqlite_journal_mode}")
        cursor.execute(f"PRAGMA cache_size = -{settings.sqlite_default_cache_size_kb}")
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    event.listen(engine.sync_engine, "connect", configure_sqlite)
    return engine


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(database_path: str | None = None) -> None:
    """Initialize database schema and engine"""
    global _engine, _session_factory

    path = database_path or settings.database_path
    logger.info("Initializing database at %s", path)

    _engine = build_engine(path)
    await create_schema(_engine)
    _session_factory = create_session_factory(_engine)

    logger.info("Database initialized successfully")


async def close_db() -> None:
    """Close database connections on shutdown"""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    begin: bool = True,
) -> AsyncIterator[AsyncSession]:
    """
    Provide an async session context manager with optional automatic transaction handling.

    Args:
        session_factory: Factory to open the session from. Defaults to the global one.
        begin: When True (default), wrap the session in `session.begin()` for auto commit/rollback.
               When False, caller is responsible for transaction demarcation and commit/rollback.
    """
    factory = session_factory or get_session_factory()

    async with factory() as session:
        if begin:
            async with session.begin():
                yield session
        else:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            else:
                await session.commit()
