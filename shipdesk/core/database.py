"""
Async engine and sessions for shipdesk.

Production sizes its pool from settings. SQLite URLs (local dev, tests)
take no pool arguments.
"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from shipdesk.core.config import Settings, settings


def engine_options(config: Settings) -> dict:
    """Keyword arguments for create_async_engine for the configured database."""
    if config.DATABASE_URL.startswith("sqlite"):
        return {}
    if config.ENVIRONMENT == "production":
        return {
            "pool_size": config.DB_POOL_SIZE,
            "max_overflow": config.DB_MAX_OVERFLOW,
            "pool_recycle": config.DB_POOL_RECYCLE,
            "pool_pre_ping": True,
        }
    return {"pool_size": 2, "max_overflow": 5, "pool_pre_ping": True}


pool_config = engine_options(settings)

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, **pool_config)

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db() -> AsyncSession:
    """Request-scoped session; routes commit explicitly, errors roll back."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
