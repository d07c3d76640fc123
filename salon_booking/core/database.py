from typing import AsyncIterator, Optional

import structlog
from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

logger = structlog.get_logger(__name__)

# SQLAlchemy Base class for models
Base = declarative_base()


def build_engine(database_url: str, isolation_level: Optional[str] = None) -> AsyncEngine:
    """Create the async database engine used by the composition root."""
    options = {
        "echo": False,
        "future": True,
        "pool_pre_ping": True,
    }
    if not database_url.startswith("sqlite"):
        options["pool_recycle"] = 300
    if isolation_level:
        options["isolation_level"] = isolation_level
    return create_async_engine(database_url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Async session factory; objects stay usable after commit."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine, create_tables: bool = False) -> None:
    """Check the database connection and optionally create the schema."""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if create_tables:
                # Register every model on the metadata before create_all
                from salon_booking import models  # noqa: F401

                await conn.run_sync(Base.metadata.create_all)

        logger.info("Database connection initialized successfully")
    except Exception as e:
        logger.error("Failed to initialize database", exc_info=e)
        raise


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency to get database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
        except Exception as e:
            await session.rollback()
            logger.error("Database session error", exc_info=e)
            raise
        finally:
            await session.close()
