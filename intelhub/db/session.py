"""
Lazily created async engine and session factory.

Celery workers run each task on a fresh event loop, so the engine is built
on first use and torn down with ``dispose_engine`` rather than at import.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from intelhub.config import settings
import logging

logger = logging.getLogger(__name__)

_engine = None
_AsyncSessionLocal = None


def get_engine():
    global _engine
    if _engine is None:
        logger.info(
            f"Creating async database engine (pool {settings.db_pool_size}"
            f"+{settings.db_max_overflow})"
        )
        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=30,
            pool_pre_ping=True,
            pool_recycle=300,
            echo=settings.debug,
            pool_use_lifo=True,
            pool_reset_on_return="rollback",
        )
    return _engine


def get_session_local():
    """Session factory shared by requests, job runners and the reconciler."""
    global _AsyncSessionLocal
    if _AsyncSessionLocal is None:
        _AsyncSessionLocal = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )
    return _AsyncSessionLocal


async def get_db():
    """FastAPI dependency: one session per request, rolled back on error."""
    AsyncSessionLocal = get_session_local()
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def dispose_engine():
    global _engine, _AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        logger.info("Async database engine disposed")
        _engine = None
        _AsyncSessionLocal = None
