"""Async engine and session factory for the portal database."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

from alembic import command
from alembic.config import Config
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from portal import models as _models
from portal.core.config import settings
from portal.core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

# Registers every table on SQLModel.metadata before create_all runs.
_MODEL_REGISTRY = _models

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+psycopg",
    "sqlite": "sqlite+aiosqlite",
}
_BACKEND_ROOT = Path(__file__).resolve().parents[2]

logger = get_logger(__name__)


def async_database_url(database_url: str) -> str:
    """Swap a bare `postgresql://` or `sqlite://` scheme for its async driver."""
    scheme, sep, rest = database_url.partition("://")
    if not sep:
        return database_url
    return f"{_ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


async_engine: AsyncEngine = create_async_engine(
    async_database_url(settings.database_url),
    pool_pre_ping=True,
)
async_session_maker = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def run_migrations() -> None:
    """Upgrade the schema to the newest Alembic revision."""
    config = Config(str(_BACKEND_ROOT / "alembic.ini"))
    config.attributes["configure_logger"] = False
    command.upgrade(config, "head")


async def init_db() -> None:
    """Migrate when `db_auto_migrate` is on, otherwise create missing tables."""
    logger.info(
        "db.init",
        extra={"dialect": async_engine.dialect.name, "auto_migrate": settings.db_auto_migrate},
    )
    if settings.db_auto_migrate:
        await asyncio.to_thread(run_migrations)
        logger.info("db.migrations.complete")
        return
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def dispose_engine() -> None:
    await async_engine.dispose()
    logger.info("db.engine.disposed")


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; work left uncommitted by the handler is rolled back."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            if session.in_transaction():
                try:
                    await session.rollback()
                except SQLAlchemyError:
                    logger.exception("db.session.rollback_failed")
