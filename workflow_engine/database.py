"""
Database Connection Management

SQLAlchemy async engine and session factory, created on first use.
"""

from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from .config import settings
from .logging_config import get_logger
from .models import Base

logger = get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def _engine_kwargs(url: str, debug: bool) -> dict:
    kwargs = {
        "echo": debug,  # Log SQL queries in debug mode
        "pool_pre_ping": True,
    }
    if url.startswith("sqlite"):
        return kwargs
    if debug:
        kwargs["poolclass"] = NullPool
    else:
        kwargs["pool_size"] = 20
        kwargs["max_overflow"] = 40
    return kwargs


def create_engine(url: Optional[str] = None, debug: Optional[bool] = None) -> AsyncEngine:
    """Create a standalone async engine (stores accept one directly)."""
    url = url or settings.DATABASE_URL
    debug = settings.DEBUG if debug is None else debug
    return create_async_engine(url, **_engine_kwargs(url, debug))


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Process-wide engine for DATABASE_URL."""
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_factory() -> async_sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for database sessions

    Usage:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """
    Verify the database connection

    Called on application startup.
    """
    engine = engine or get_engine()
    try:
        async with engine.begin() as conn:
            await conn.run_sync(lambda _: None)
        logger.info("Database connection established", url=str(engine.url).split("@")[-1])
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        raise


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """
    Create all engine tables

    WARNING: Only use this in development and tests.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


async def close_db() -> None:
    """
    Dispose the process-wide engine

    Called on application shutdown.
    """
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed")
