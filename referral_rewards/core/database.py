"""
Database engine and session handling for the referral services

Sessions are created with ``expire_on_commit=False`` so rows returned by a
service stay readable after the service has committed.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
import logging

from .config import settings

logger = logging.getLogger(__name__)

def build_engine(url: Optional[str] = None, **overrides) -> AsyncEngine:
    """
    Create an async engine for ``url`` (defaults to the configured database)

    SQLite gets no pool sizing; every other backend uses the pool settings
    with pre-ping enabled.
    """
    url = url or settings.database_url_async
    if url.startswith("sqlite"):
        options = {"poolclass": NullPool}
    else:
        options = {
            "pool_size": settings.DATABASE_POOL_SIZE,
            "max_overflow": settings.DATABASE_MAX_OVERFLOW,
            "pool_timeout": settings.DATABASE_POOL_TIMEOUT,
            "pool_pre_ping": True,
        }
    options.update(overrides)
    return create_async_engine(url, echo=settings.DATABASE_ECHO, **options)

def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

engine = build_engine()
AsyncSessionLocal = create_session_factory(engine)

@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Session for scripts and Celery tasks

    Commits whatever the block left pending and rolls back on error.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    Run a block of writes as one unit of work on an existing session.

    Commits when the block exits cleanly; rolls back and re-raises otherwise,
    so a failure part-way through leaves no partial ledger rows behind.
    """
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise

async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create the referral and reward tables"""
    from referral_rewards.models import Base

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Referral tables created")
