"""Database module with async SQLAlchemy engine and session management."""

from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from .settings import get_settings

# SQLAlchemy base for models
Base = declarative_base()


def build_engine(db_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    settings = get_settings()
    db_url = db_url or settings.db_url
    echo = settings.database_echo if echo is None else echo

    if db_url.startswith("sqlite"):
        return create_async_engine(db_url, echo=echo)

    return create_async_engine(
        db_url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session maker bound to ``engine``."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@lru_cache()
def get_engine() -> AsyncEngine:
    """Process-wide engine built from settings."""
    return build_engine()


@lru_cache()
def get_session_factory() -> async_sessionmaker:
    """Process-wide session maker."""
    return build_session_factory(get_engine())


async def create_all(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables in the database."""
    from . import models  # noqa: F401  registers tables on Base.metadata

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all(engine: Optional[AsyncEngine] = None) -> None:
    """Drop all tables in the database."""
    from . import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
