"""SQLAlchemy async database setup and engine configuration."""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import get_settings


def create_db_engine(database_url: Optional[str] = None, **engine_kwargs) -> AsyncEngine:
    """Create and configure async SQLAlchemy engine.

    Args:
        database_url: Overrides ``DATABASE_URL`` from settings.
        engine_kwargs: Extra ``create_async_engine`` arguments (e.g. poolclass).

    Returns:
        Async SQLAlchemy engine instance.
    """
    settings = get_settings()
    url = database_url or settings.DATABASE_URL
    kwargs = dict(echo=settings.SQLALCHEMY_ECHO)
    if not url.startswith("sqlite"):
        kwargs.update(pool_pre_ping=True)
    kwargs.update(engine_kwargs)
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create async session factory.

    Args:
        engine: SQLAlchemy async engine instance.

    Returns:
        Async sessionmaker instance.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create the engine's tables if they do not exist."""
    from db.base import Base
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(engine: AsyncEngine) -> None:
    """Dispose of pooled connections."""
    await engine.dispose()
