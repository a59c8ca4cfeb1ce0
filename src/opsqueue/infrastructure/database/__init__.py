"""
Database Infrastructure
=======================

Manages database connections, session lifecycle, and engine configuration.

Uses SQLAlchemy 2.0 with asyncpg for async PostgreSQL operations. The
``Database`` object is created at startup and kept on the application state;
there is no module-level engine.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import Request
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from opsqueue.config import Settings


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    SQLAlchemy 2.0 style using DeclarativeBase.
    """
    pass


class Database:
    """Owns the async engine and the session factory."""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._engine: Optional[AsyncEngine] = None
        self._session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    def connect(self) -> AsyncEngine:
        """
        Create the engine and session maker.

        Should be called during application startup.
        """
        # asyncpg expects ssl= rather than libpq's sslmode=
        database_url = self._settings.database_url.replace("sslmode=", "ssl=")

        engine_options = {"echo": self._settings.debug, "pool_pre_ping": True}
        # SQLite drivers run without a sized connection pool
        if make_url(database_url).get_backend_name() != "sqlite":
            engine_options["pool_size"] = self._settings.db_pool_size
            engine_options["max_overflow"] = self._settings.db_max_overflow

        self._engine = create_async_engine(database_url, **engine_options)
        self._session_maker = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        return self._engine

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database engine not initialized. Call connect() first.")
        return self._engine

    async def close(self) -> None:
        """Dispose of pooled connections. Called during shutdown."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Session scope for background jobs and scripts.

        Commits on success and rolls back on error.

        Usage:
            async with database.session() as session:
                await service.sweep()
        """
        if self._session_maker is None:
            raise RuntimeError("Database not initialized. Call connect() first.")

        async with self._session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        """
        Create all database tables.

        Development only; production schemas are migrated separately.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


async def get_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency yielding a request-scoped session.

    Usage in FastAPI:
        @router.get("/timers/{timer_id}")
        async def get_timer(session: AsyncSession = Depends(get_session)):
            ...
    """
    database: Database = request.app.state.database
    async with database.session() as session:
        yield session
