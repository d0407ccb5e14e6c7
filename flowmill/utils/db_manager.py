"""
Database access for the worker, the CLI and the operations facade.

One :data:`db_manager` per process owns the async engine. The worker and
the background loops open a short session per task through
:meth:`DatabaseManager.get_async_session_context`; ``flowmill db init``
creates the schema with :meth:`DatabaseManager.create_tables`.
"""

import json
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from ..settings import DatabaseDriver, settings
from ..utils.logger import logger


def _engine_data_serializer(obj: Any) -> str:
    """Serialize JSON columns; engine data and step configs arrive as pydantic models."""

    def default(o: Any) -> Any:
        if hasattr(o, "model_dump"):
            return o.model_dump(mode="json")
        raise TypeError(f"Object of type {type(o).__name__} is not JSON serializable")

    return json.dumps(obj, default=default)


class DatabaseManager:
    """Lazily built engine and session factory for the flowmill tables.

    Nothing connects until the first session is requested, so importing the
    services (and registering the worker's tasks) stays free of I/O.
    """

    def __init__(self) -> None:
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @staticmethod
    def async_url() -> str:
        """Async driver URL for the configured database."""
        driver = settings.database_driver
        if driver == DatabaseDriver.SQLITE:
            return f"sqlite+aiosqlite:///{settings.database_name}.db"
        if driver == DatabaseDriver.POSTGRESQL:
            return settings.database_url.replace("postgresql+psycopg2", "postgresql+asyncpg")
        if driver == DatabaseDriver.POSTGRESQL_ASYNC:
            return settings.database_url
        raise ValueError(f"No async driver for {driver}")

    def _create_engine(self) -> AsyncEngine:
        url = self.async_url()
        if settings.database_driver == DatabaseDriver.SQLITE:
            engine = create_async_engine(
                url,
                connect_args={"check_same_thread": False},
                echo=settings.debug,
                json_serializer=_engine_data_serializer,
            )
        else:
            engine = create_async_engine(
                url,
                echo=settings.debug,
                pool_size=settings.database_pool_size,
                max_overflow=0,
                json_serializer=_engine_data_serializer,
            )
        logger.info(f"Database engine created for {settings.database_driver.value}")
        return engine

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                self.engine, class_=AsyncSession, expire_on_commit=False
            )
        return self._session_factory

    async def create_tables(self) -> None:
        """Create the pipeline, flow, job, processed_item and scheduled_action tables."""
        import flowmill.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Flowmill tables created")

    @asynccontextmanager
    async def get_async_session_context(self) -> AsyncGenerator[AsyncSession]:
        """Session for one task or sweep; committed on success, rolled back on database errors.

        Usage:
            async with db_manager.get_async_session_context() as session:
                runtime = build_runtime(session, components)
                await runtime.step_runner.execute_step(job_id, flow_step_id)
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                logger.error(f"Database error: {e}")
                await session.rollback()
                raise

    async def close(self) -> None:
        """Dispose of the engine; the next session builds a fresh one."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database engine disposed")

    def __repr__(self) -> str:
        return (
            f"<DatabaseManager(driver={settings.database_driver}, "
            f"connected={self._engine is not None})>"
        )


db_manager = DatabaseManager()
