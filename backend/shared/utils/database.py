"""
Async PostgreSQL access for the leaderboard store (SQLAlchemy 2.0 + asyncpg).
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shared.config import Settings, get_settings
from shared.models.orm import Base
from shared.utils.logging import get_logger

logger = get_logger(__name__)


class DatabaseManager:
    """
    Owns the async engine and hands out sessions.

    connect() opens one real connection before returning, so a database that
    is not up yet fails here (and can be retried) instead of on the first
    query of an import.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def connect(self) -> None:
        engine = create_async_engine(
            self._settings.database_url_str,
            pool_size=self._settings.db_pool_min,
            max_overflow=max(0, self._settings.db_pool_max - self._settings.db_pool_min),
            pool_pre_ping=True,
            echo=self._settings.debug,
            connect_args={"command_timeout": self._settings.db_command_timeout},
        )
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception:
            await engine.dispose()
            raise
        self._engine = engine
        self._session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
        logger.info("database_connected", url=self._settings.database_url_safe_log)

    async def disconnect(self) -> None:
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("database_disconnected")

    async def create_schema(self) -> None:
        """Create any missing tables. Existing tables are left untouched."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_schema_ensured", tables=sorted(Base.metadata.tables))

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("DatabaseManager not connected.")
        return self._engine

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("DatabaseManager not connected.")
        return self._session_factory

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        """Session for queries; nothing is committed."""
        async with self._factory()() as session:
            yield session

    @asynccontextmanager
    async def write_session(self) -> AsyncIterator[AsyncSession]:
        """Session committed on success and rolled back on any error."""
        async with self._factory()() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
