"""Database connection and session management."""
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from payment_orchestration.config import Settings
from payment_orchestration.database.models import Base


def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create the database engine.

    Pool sizing only applies to server databases; SQLite uses its own pool.

    Returns:
        AsyncEngine: SQLAlchemy async engine instance
    """
    options: Dict[str, Any] = {"echo": settings.database_echo}
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,  # Recycle connections after 1 hour
        )
    return create_async_engine(settings.database_url, **options)


class Database:
    """Owns one engine and its session factory."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(build_engine(settings))

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, Any]:
        """
        Transactional session scope.

        Commits on success and rolls back on any exception.

        Example:
            async with database.session() as session:
                session.add(record)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in models if they don't exist.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> None:
        """Run ``SELECT 1``; raises if the database is unreachable."""
        async with self.session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()

    async def close(self) -> None:
        """Close database connections and dispose of the engine."""
        await self.engine.dispose()
