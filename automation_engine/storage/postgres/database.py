"""
Database connection management with connection pooling.

Provides async database sessions with proper lifecycle management.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from automation_engine.config import Settings, get_settings


class Database:
    """
    Database connection manager.

    Handles connection pooling and session management. PostgreSQL (asyncpg) in
    deployment; any SQLAlchemy async URL works, which tests use for SQLite.
    """

    def __init__(self, url: Optional[str] = None, settings: Optional[Settings] = None):
        self._url = url
        self._settings = settings
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def url(self) -> str:
        settings = self._settings or get_settings()
        return self._url or settings.postgres.url

    async def init(self) -> None:
        """Initialize database engine and session factory."""
        settings = self._settings or get_settings()
        url = self.url

        engine_options: dict[str, Any] = {}
        if not url.startswith("sqlite"):
            engine_options.update(
                pool_size=settings.postgres.pool_size,
                max_overflow=settings.postgres.max_overflow,
                pool_timeout=settings.postgres.pool_timeout,
                pool_pre_ping=True,
            )

        self._engine = create_async_engine(url, **engine_options)

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def create_all(self) -> None:
        """Create tables directly from the models (tests and local development)."""
        from automation_engine.storage.postgres.models import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close database connections."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    @property
    def engine(self) -> AsyncEngine:
        """Get database engine."""
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get a database session.

        Usage:
            async with database.session() as session:
                result = await session.execute(query)
        """
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get a database session with explicit transaction.

        Everything done in the block commits together or not at all.
        """
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")

        session = self._session_factory()
        try:
            async with session.begin():
                yield session
        finally:
            await session.close()
