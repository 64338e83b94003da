"""Async SQLAlchemy engine and session management."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str, echo: bool = False):
        """
        Initialize database connection.

        Args:
            database_url: Async SQLAlchemy URL (``sqlite+aiosqlite`` or
                ``postgresql+asyncpg``)
            echo: Whether to echo SQL queries
        """
        self.database_url = database_url
        self.is_sqlite = database_url.startswith("sqlite")

        if self.is_sqlite:
            # SQLite uses a static per-file pool; sizing options do not apply
            self.engine = create_async_engine(database_url, echo=echo)
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        else:
            self.engine = create_async_engine(
                database_url,
                echo=echo,
                pool_size=10,
                max_overflow=20,
                pool_pre_ping=True,
            )

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_tables(self):
        """Create all database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Read session. Nothing is committed."""
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """Session wrapped in one transaction: committed on exit, rolled back on error."""
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()
        logger.info("Database connections closed")
