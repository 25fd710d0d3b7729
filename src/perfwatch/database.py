"""
Perfwatch Database

Database connection and session management.
"""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel
import structlog
import os

from .config import PerfwatchSettings

# Imported for their side effect of registering tables on SQLModel.metadata
from .control_plane import models as _control_plane_models  # noqa: F401
from .metrics import models as _metrics_models  # noqa: F401
from .anomaly import models as _anomaly_models  # noqa: F401

logger = structlog.get_logger(__name__)


class Database:
    """
    Database connection manager for perfwatch.

    Uses async SQLModel with asyncpg in production and aiosqlite for
    local development and tests.
    """

    def __init__(self, settings: PerfwatchSettings) -> None:
        self._settings = settings
        engine_kwargs = {"echo": False}
        if not settings.is_sqlite:
            engine_kwargs.update(pool_pre_ping=True, pool_size=5, max_overflow=15)
        self._engine: AsyncEngine = create_async_engine(settings.database_dsn, **engine_kwargs)
        self._session_factory = sessionmaker(
            bind=self._engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    @property
    def engine(self) -> AsyncEngine:
        """Get the database engine."""
        return self._engine

    def session(self) -> AsyncSession:
        """Get a database session."""
        return self._session_factory()

    async def init_models(self) -> None:
        """
        Create the site, job, metric and anomaly tables if they are missing.

        Set SKIP_INIT_MODELS=true when the schema is managed by migrations.
        """
        if os.getenv("SKIP_INIT_MODELS", "false").lower() == "true":
            logger.info("skipping_init_models")
            return

        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("perfwatch_tables_initialized")

    async def dispose(self) -> None:
        """Close database connections."""
        await self._engine.dispose()
