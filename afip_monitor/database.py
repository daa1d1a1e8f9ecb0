"""Database engine, session factory and declarative base."""
import logging
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()

SessionFactory = async_sessionmaker[AsyncSession]


def create_engine_and_sessionmaker(
    database_url: str,
    echo: bool = False,
) -> Tuple[AsyncEngine, SessionFactory]:
    """
    Build an async engine and its session factory.

    Components receive the session factory explicitly and open one session
    per unit of work:

        async with session_factory() as db:
            ...
            await db.commit()
    """
    engine = create_async_engine(database_url, echo=echo, future=True)
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables that don't exist yet."""
    # Import models so they register on Base.metadata
    from afip_monitor import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


async def dispose_engine(engine: Optional[AsyncEngine]) -> None:
    if engine is not None:
        await engine.dispose()
