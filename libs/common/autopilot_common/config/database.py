"""Database configuration and connection management."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from functools import lru_cache

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .base import BaseAppSettings


class DatabaseSettings(BaseAppSettings):
    """Database configuration and connection settings."""

    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"  # noqa: S105
    POSTGRES_HOST: str = "db"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "autopilot"
    DATABASE_URL: str | None = None
    pool_size: int = 20
    max_overflow: int = 30
    pool_timeout: int = 30  # Timeout for getting connection from pool
    pool_recycle: int = 3600
    echo: bool = False

    @property
    def url(self) -> str:
        """Async database URL for SQLAlchemy."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


class Database:
    """Database connection manager.

    Owns one async engine and the session factory handed to services. Unlike a
    process-wide singleton, each application builds its own instance and passes
    ``session_factory`` down explicitly.
    """

    def __init__(self, settings: DatabaseSettings | None = None) -> None:
        self.settings = settings or get_db_settings()
        self.engine: AsyncEngine = create_async_engine(self.settings.url, **self._engine_kwargs())
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    def _engine_kwargs(self) -> dict:
        if self.settings.is_sqlite:
            # SQLite pools do not accept sizing arguments
            return {"echo": self.settings.echo}
        return {
            "echo": self.settings.echo,
            "pool_size": self.settings.pool_size,
            "max_overflow": self.settings.max_overflow,
            "pool_timeout": self.settings.pool_timeout,
            "pool_recycle": self.settings.pool_recycle,
        }

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an async database session with automatic transaction management."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def dispose(self) -> None:
        await self.engine.dispose()


@lru_cache
def get_db_settings() -> DatabaseSettings:
    """Get database settings."""
    return DatabaseSettings()
