"""Async database engine and session lifecycle for Berth."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

# Registers TenantNamespace, ContainerInstance and SshConnection tables
import berth.models  # noqa: F401
from berth.config import get_settings

logger = structlog.get_logger()

_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


def _get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        database = get_settings().database
        _engine = create_async_engine(
            database.url,
            echo=database.echo,
            **_engine_options(database.url),
        )
    return _engine


def _get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(_get_engine(), expire_on_commit=False)
    return _session_maker


async def init_db() -> None:
    """Create the tenant, instance and connection tables if missing."""
    async with _get_engine().begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("db.init", tables=sorted(SQLModel.metadata.tables))


async def close_db() -> None:
    """Dispose the engine; the next session call builds a new one."""
    global _engine, _session_maker
    if _engine is None:
        return
    await _engine.dispose()
    logger.info("db.closed")
    _engine = None
    _session_maker = None


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error.

    Used by background maintenance cycles, which run outside a request::

        async with get_async_session() as session:
            manager = InstanceManager(driver, session)
            await manager.reconcile_all()
    """
    async with _get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session_dependency() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request."""
    async with get_async_session() as session:
        yield session
