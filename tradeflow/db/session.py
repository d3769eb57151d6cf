"""Async engine and session factory for the analysis database."""

from __future__ import annotations

from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

logger = structlog.get_logger(__name__)


def _engine_options(database_url: str, pool_size: int, max_overflow: int) -> Dict[str, Any]:
    if ":memory:" in database_url:
        # One shared connection, or every session would see an empty database
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    if database_url.startswith("sqlite"):
        return {}
    return {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
    }


class DatabaseManager:
    """Owns the engine shared by API handlers, workers and the scanner.

    Services open ``session_factory()`` for each short read or write; no
    session is held while a phase waits on a brokerage or AI provider.
    """

    def __init__(self, database_url: str, echo: bool = False, pool_size: int = 5, max_overflow: int = 10):
        self.database_url = database_url
        self.echo = echo
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self._engine: AsyncEngine | None = None
        self._session_factory: sessionmaker | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(
                self.database_url,
                echo=self.echo,
                **_engine_options(self.database_url, self.pool_size, self.max_overflow),
            )
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        return self._session_factory

    async def create_tables(self) -> None:
        """Create the analysis, step, order, settings and rebalance tables."""
        from . import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Database tables ensured", url=self.database_url.split("@")[-1])

    async def drop_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.drop_all)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


def init_db(database_url: str, echo: bool = False) -> DatabaseManager:
    """Build the manager for a server or worker process."""
    manager = DatabaseManager(database_url=database_url, echo=echo)
    logger.info("Database manager initialized", url=database_url.split("@")[-1])
    return manager
