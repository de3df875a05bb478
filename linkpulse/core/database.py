"""Database configuration with SQLAlchemy 2.0 async support."""

from sqlalchemy import MetaData
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from linkpulse.core.config import Settings

# Naming convention for constraints (helps with migrations)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    metadata = MetaData(naming_convention=convention)


class Database:
    """Owns the async engine and the session factory for one process.

    Usage:
        database = Database(settings)
        async with database.session() as session:
            ...
        await database.dispose()
    """

    def __init__(self, settings: Settings):
        self.url = make_url(settings.database_url)
        self.engine: AsyncEngine = create_async_engine(
            settings.database_url,
            echo=settings.debug,  # Log SQL statements in debug mode
            **self._engine_options(),
        )
        # Session factory for creating database sessions
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    def _engine_options(self) -> dict:
        if self.dialect == "sqlite":
            # Writers wait on the file lock instead of failing fast
            return {"connect_args": {"timeout": 30}}
        return {
            "pool_size": 5,  # Number of connections to keep in the pool
            "max_overflow": 10,  # Additional connections beyond pool_size
            "pool_timeout": 30,  # Seconds to wait for a connection
            "pool_recycle": 1800,  # Recycle connections after 30 minutes
            "pool_pre_ping": True,  # Verify connections before use
        }

    @property
    def dialect(self) -> str:
        """Backend name, e.g. ``postgresql`` or ``sqlite``."""
        return self.url.get_backend_name()

    def session(self) -> AsyncSession:
        """Open a new session; use as an async context manager."""
        return self.session_factory()

    async def create_all(self) -> None:
        """Create all tables.

        Note: In production, use Alembic migrations instead.
        This is useful for testing or initial development.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        """Close database connections."""
        await self.engine.dispose()
