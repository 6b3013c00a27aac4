"""
Database connection and session management for the Identity Reconciliation Engine
This module sets up the async SQLAlchemy engine and session factory.
Supports local PostgreSQL and AWS RDS deployments with connection pooling,
and SQLite (aiosqlite) for local tests. Each session is one transaction:
committed when the block exits cleanly, rolled back otherwise.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from models import Base

logger = logging.getLogger(__name__)


def _serialize_sqlite_transactions(engine: AsyncEngine):
    """
    SQLite has no row locks and the driver defers BEGIN until the first write,
    so two requests could read the same snapshot. Take the write lock when
    each transaction starts instead; concurrent requests then queue on the
    busy timeout and run one after another.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")


class DatabaseManager:
    """
    Database connection manager that handles the async SQLAlchemy engine,
    session creation, and connection lifecycle management.
    The engine is created lazily on first use.
    """

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = settings.get_database_url(database_url) if database_url else None
        self.engine: Optional[AsyncEngine] = None
        self.SessionLocal: Optional[async_sessionmaker] = None

    @property
    def is_sqlite(self) -> bool:
        return self._resolve_url().startswith("sqlite")

    def _resolve_url(self) -> str:
        if self.database_url is None:
            self.database_url = settings.get_active_database_url()
        return self.database_url

    def _engine_options(self) -> dict:
        """Engine keyword arguments for the configured backend"""
        options = {"echo": settings.DEBUG}
        if self.is_sqlite:
            return options

        options["pool_pre_ping"] = True
        options["isolation_level"] = settings.DB_ISOLATION_LEVEL
        if settings.is_lambda_environment():
            # Lambda-optimized settings for RDS Proxy
            options.update(
                pool_size=1,
                max_overflow=0,
                pool_recycle=3600,
                pool_timeout=10,
                connect_args={
                    "command_timeout": 10,
                    "server_settings": {"application_name": "identity-reconciliation-lambda"},
                },
            )
        else:
            options.update(
                pool_size=settings.DB_POOL_SIZE,
                max_overflow=settings.DB_MAX_OVERFLOW,
                pool_timeout=settings.DB_POOL_TIMEOUT,
                connect_args={
                    "server_settings": {"application_name": "identity-reconciliation"},
                },
            )
        return options

    def _initialize_database(self):
        """Initialize database engine and session factory"""
        database_url = self._resolve_url()
        logger.info(f"Initializing database connection to: {make_url(database_url).render_as_string(hide_password=True)}")

        try:
            self.engine = create_async_engine(database_url, **self._engine_options())
        except Exception as e:
            logger.error(f"Failed to initialize database connection: {e}")
            raise

        if self.is_sqlite:
            _serialize_sqlite_transactions(self.engine)

        self.SessionLocal = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database connection initialized successfully")

    def get_engine(self) -> AsyncEngine:
        if self.engine is None:
            self._initialize_database()
        return self.engine

    async def create_tables(self):
        """Create all database tables defined in models"""
        logger.info("Creating database tables...")
        async with self.get_engine().begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")

    async def test_connection(self) -> bool:
        """Test database connection"""
        try:
            async with self.get_engine().connect() as connection:
                await connection.execute(text("SELECT 1"))
            logger.info("Database connection test successful")
            return True
        except Exception as e:
            logger.error(f"Database connection test failed: {e}")
            return False

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """
        Context manager for a transactional database session
        Usage:
            async with db_manager.get_session() as session:
                # database operations
        """
        self.get_engine()
        session = self.SessionLocal()
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.debug(f"Database session rolled back: {e!r}")
            raise
        finally:
            await session.close()

    async def close(self):
        """Dispose of the engine and its pooled connections"""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self.SessionLocal = None


# Global database manager instance
db_manager = DatabaseManager()
