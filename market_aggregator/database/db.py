"""
Database initialization and async session management.
"""

from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.pool import StaticPool
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from loguru import logger

from .models import Base


class Database:
    """Async database connection and session management"""

    def __init__(self, db_path: str = "market_aggregator.db"):
        """
        Initialize database connection settings.

        Args:
            db_path: Path to SQLite database file, ":memory:", or full connection URL
        """
        # Handle both file paths and connection URLs
        if db_path.startswith("sqlite"):
            self.db_url = db_path
            self.db_path = db_path.split(":///", 1)[-1] if ":///" in db_path else ":memory:"
        else:
            self.db_path = db_path
            self.db_url = (
                "sqlite+aiosqlite://" if db_path == ":memory:"
                else f"sqlite+aiosqlite:///{db_path}"
            )

        self.async_engine = None
        self.AsyncSessionLocal = None
        self._async_initialized = False

    @property
    def is_memory(self) -> bool:
        return self.db_path in ("", ":memory:")

    async def initialize(self):
        """Create the async engine and all tables"""
        if self._async_initialized:
            return

        if self.is_memory:
            # A single shared connection, otherwise every session sees an empty database
            self.async_engine = create_async_engine(
                self.db_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False,
            )
        else:
            self.async_engine = create_async_engine(self.db_url, echo=False)

            @event.listens_for(self.async_engine.sync_engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA busy_timeout=5000")
                cursor.close()

        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.AsyncSessionLocal = async_sessionmaker(
            self.async_engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        self._async_initialized = True
        logger.info(f"Async database initialized at {self.db_path}")

    async def close(self):
        """Close async database connection"""
        if self.async_engine:
            await self.async_engine.dispose()
            self._async_initialized = False

    @asynccontextmanager
    async def session(self):
        """Get an async database session with automatic commit/rollback"""
        if not self._async_initialized:
            await self.initialize()

        async with self.AsyncSessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Database error: {e}")
                raise
