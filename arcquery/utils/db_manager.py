"""
Database manager for arcquery.

This module provides the async engine and session factory the query engine
and the index service run on.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from arcquery.exceptions import ConfigurationError
from arcquery.settings import DatabaseDriver, Settings, settings
from arcquery.utils.logger import logger


class DatabaseManager:
    """
    Manages database connections and sessions without global state.

    The engine is created lazily on first use, from ``url`` if given or else
    from the database settings.
    """

    def __init__(self, url: str | None = None, config: Settings | None = None) -> None:
        self._config = config or settings
        self._url = url
        self._async_engine: AsyncEngine | None = None
        self._async_session_factory: async_sessionmaker[AsyncSession] | None = None

    def _get_async_database_url(self) -> str:
        """Convert the configured database URL to its async driver."""
        if self._url is not None:
            return self._url
        driver = self._config.database_driver
        if driver == DatabaseDriver.SQLITE:
            return f"sqlite+aiosqlite:///{self._config.database_name}.db"
        elif driver == DatabaseDriver.POSTGRESQL:
            return self._config.database_url.replace("postgresql+psycopg2", "postgresql+asyncpg")
        elif driver == DatabaseDriver.POSTGRESQL_ASYNC:
            return self._config.database_url
        else:
            raise ConfigurationError(f"Async not supported for {driver}")

    def _create_async_engine(self) -> AsyncEngine:
        """Create and configure the asynchronous database engine."""
        async_url = self._get_async_database_url()

        if async_url.startswith("sqlite"):
            in_memory = ":memory:" in async_url or async_url.endswith("://")
            engine = create_async_engine(
                async_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool if in_memory else None,
                echo=self._config.debug,
            )
        else:
            engine = create_async_engine(
                async_url,
                echo=self._config.debug,
                pool_size=20,
                max_overflow=0,
            )

        logger.info(f"Async database engine created: {engine.url.render_as_string(hide_password=True)}")
        return engine

    @property
    def async_engine(self) -> AsyncEngine:
        """Get or create the asynchronous database engine."""
        if self._async_engine is None:
            self._async_engine = self._create_async_engine()
        return self._async_engine

    @property
    def async_session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create the async session factory."""
        if self._async_session_factory is None:
            self._async_session_factory = async_sessionmaker(
                self.async_engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._async_session_factory

    async def create_db_and_tables_async(self) -> None:
        """Create database tables asynchronously."""
        logger.info("Creating database tables (async)...")
        async with self.async_engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Database tables created (async)")

    async def drop_db_and_tables_async(self) -> None:
        """Drop all database tables asynchronously."""
        logger.info("Dropping database tables (async)...")
        async with self.async_engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.drop_all)
        logger.info("Database tables dropped (async)")

    @asynccontextmanager
    async def get_async_session_context(self) -> AsyncGenerator[AsyncSession]:
        """
        Get an async database session as a context manager.

        Usage:
            async with db_manager.get_async_session_context() as session:
                service = QueryService(session)
                async for ds in service.execute_query("STUDY", context):
                    ...

        Yields:
            AsyncSession: SQLModel async session
        """
        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Database error: {e}")
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self) -> None:
        """Close all database connections."""
        if self._async_engine:
            await self._async_engine.dispose()
            self._async_engine = None
            self._async_session_factory = None
            logger.info("Async database engine disposed")

    def __repr__(self) -> str:
        """String representation of the DatabaseManager."""
        return (
            f"<DatabaseManager("
            f"driver={self._config.database_driver.value}, "
            f"async_initialized={self._async_engine is not None}"
            f")>"
        )


# Create a singleton instance
db_manager = DatabaseManager()
