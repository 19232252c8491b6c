"""SessionKeeper Database Configuration - Async SQLAlchemy."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from sessionkeeper.core.config import Settings, settings

# Base class for models
Base = declarative_base()


def create_engine_from_settings(config: Settings) -> AsyncEngine:
    """Create an async engine with the configured connection pool."""
    return create_async_engine(
        str(config.database_url),
        pool_size=config.db_pool_size,
        max_overflow=config.db_max_overflow,
        pool_timeout=config.db_pool_timeout,
        pool_recycle=config.db_pool_recycle,
        pool_pre_ping=True,  # Verify connection before use
        # Only echo SQL when debug is explicitly enabled
        echo=config.debug and config.log_level == "DEBUG",
    )


engine = create_engine_from_settings(settings)

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)
