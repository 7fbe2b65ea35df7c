# archivist/core/shared/database_service.py
"""
Database service for async SQLAlchemy session management.

Provides a singleton service for managing database connections, sessions,
and health checks. PostgreSQL (asyncpg) is the production backend; SQLite
(aiosqlite) is accepted for local development and the test suite.

Usage:
    from archivist.core.shared.database_service import database_service

    # Get async session (context manager)
    async with database_service.get_session() as session:
        job = await session.get(BuildJob, build_id)

    # Initialize database (create tables)
    await database_service.init_db()

    # Health check
    health = await database_service.health_check()
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from archivist.config import settings
from archivist.core.database.base import Base


def _is_celery_worker() -> bool:
    """Check if we're running inside a Celery worker process."""
    return (
        os.getenv("CELERY_WORKER") == "1" or
        "celery" in os.getenv("_", "").lower() or
        os.getenv("FORKED_BY_MULTIPROCESSING") == "1"
    )


class DatabaseService:
    """
    Database service for managing async SQLAlchemy sessions.

    Attributes:
        _engine: Async SQLAlchemy engine
        _session_factory: Async session factory
        _logger: Logger instance

    Methods:
        get_session(): Get async database session (context manager)
        init_db(): Initialize database (create all tables)
        drop_all(): Drop all tables (tests and local resets only)
        health_check(): Check database connectivity
        close(): Close database engine and connections
    """

    def __init__(self, database_url: Optional[str] = None):
        self._logger = logging.getLogger("archivist.database")
        self._database_url = database_url or settings.database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._initialize_engine()

    @property
    def is_sqlite(self) -> bool:
        return self._database_url.lower().startswith("sqlite")

    def _initialize_engine(self) -> None:
        """
        Initialize the async engine.

        Configuration:
            - SQLite and Celery workers use NullPool (fresh connection per
              checkout) to avoid "attached to a different loop" errors when
              asyncio.run() creates a new event loop per task
            - PostgreSQL API processes use a pre-pinged, recycled pool
        """
        safe_url = self._database_url.split("@")[-1] if "@" in self._database_url else self._database_url
        self._logger.info(f"Initializing database: {safe_url}")

        if self.is_sqlite or _is_celery_worker():
            self._engine = create_async_engine(
                self._database_url,
                poolclass=NullPool,
                echo=settings.debug,
            )
            self._logger.info("Database configured with NullPool")
        else:
            self._engine = create_async_engine(
                self._database_url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_pre_ping=True,
                pool_recycle=settings.db_pool_recycle,
                echo=settings.debug,
                connect_args={
                    "server_settings": {
                        "application_name": "archivist",
                        "jit": "off",
                    }
                },
            )
            self._logger.info(
                f"Connection pool: size={settings.db_pool_size}, "
                f"max_overflow={settings.db_max_overflow}, recycle={settings.db_pool_recycle}s"
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session as context manager.

        Automatically handles commit on success and rollback on error.

        Yields:
            AsyncSession: Async database session

        Raises:
            RuntimeError: If database is not initialized
            Exception: Any database errors (triggers rollback)
        """
        if not self._session_factory:
            raise RuntimeError("Database not initialized")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """
        Create all tables defined in the ORM models if they don't exist.

        Safe to call multiple times (won't recreate existing tables).
        """
        if not self._engine:
            raise RuntimeError("Database engine not initialized")

        self._logger.info("Creating database tables...")

        async with self._engine.begin() as conn:
            # Import all models to ensure they're registered with Base
            from archivist.core.database import models  # noqa: F401

            await conn.run_sync(Base.metadata.create_all)

        self._logger.info("Database tables created successfully")

    async def drop_all(self) -> None:
        if not self._engine:
            raise RuntimeError("Database engine not initialized")

        async with self._engine.begin() as conn:
            from archivist.core.database import models  # noqa: F401

            await conn.run_sync(Base.metadata.drop_all)

    async def health_check(self) -> Dict[str, Any]:
        """
        Check database connectivity and gather row counts for the core tables.

        Returns:
            Dict with health status:
                {
                    "status": "healthy" | "unhealthy",
                    "connected": True | False,
                    "error": "error message" (if unhealthy),
                    "tables": {"build_jobs": count, "incidents": count, ...}
                }
        """
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))

                tables = {}
                for table_name in ("build_jobs", "incidents", "tickets", "agent_runs"):
                    result = await session.execute(text(f"SELECT COUNT(*) FROM {table_name}"))
                    tables[table_name] = result.scalar() or 0

            return {
                "status": "healthy",
                "connected": True,
                "database_type": "sqlite" if self.is_sqlite else "postgresql",
                "tables": tables,
            }

        except Exception as e:
            self._logger.error(f"Database health check failed: {str(e)}")
            return {
                "status": "unhealthy",
                "connected": False,
                "error": str(e),
            }

    async def close(self) -> None:
        """Close database engine and all connections."""
        if self._engine:
            await self._engine.dispose()
            self._logger.info("Database connections closed")

    def __repr__(self) -> str:
        return f"<DatabaseService(sqlite={self.is_sqlite})>"


# Global singleton instance
database_service = DatabaseService()
