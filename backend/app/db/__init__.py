"""
Database Layer - Async SQLAlchemy engine + session factory.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app import config

logger = logging.getLogger("costing-db")


class Base(DeclarativeBase):
    pass


def async_url(url: str) -> str:
    """Plain postgres / sqlite URLs mapped onto their async drivers."""
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://") and "+aiosqlite" not in url:
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def make_engine(url: Optional[str] = None) -> AsyncEngine:
    return create_async_engine(async_url(url or config.DATABASE_URL), pool_pre_ping=True, echo=False)


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = make_engine()
AsyncSessionLocal = make_session_factory(engine)


async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create every table that does not exist yet."""
    from app.models import orm_models  # noqa: F401
    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized.")
