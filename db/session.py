import logging
from typing import Tuple

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config.settings import Settings
from db.models import Base


def create_engine_and_session_factory(
    settings: Settings,
) -> Tuple[AsyncEngine, async_sessionmaker]:
    """
    Build the async engine and session factory for the configured database.

    Sessions keep loaded attributes after commit: services hand ORM objects
    back to callers and async sessions cannot lazy-load them afterwards.
    """
    engine_kwargs = {"echo": settings.DB_ECHO}
    if not settings.DATABASE_URL.startswith("sqlite"):
        engine_kwargs.update(pool_pre_ping=True, pool_recycle=3600)

    engine = create_async_engine(settings.DATABASE_URL, **engine_kwargs)
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    logging.info(f"Database engine created for {engine.url.render_as_string(hide_password=True)}")
    return engine, session_factory


async def create_all_tables(engine: AsyncEngine) -> None:
    """Create the schema directly from metadata (tests and local development)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
