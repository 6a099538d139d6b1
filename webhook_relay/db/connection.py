"""
Database connection management.
Handles async SQLAlchemy engine and session creation.

The relay talks to two databases: the job store and the dispatch queue. Each
gets its own Database instance so an outage of one never takes the other down.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import MetaData, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    stop_after_attempt,
    wait_fixed,
)

from webhook_relay.config import Settings
from webhook_relay.observability.tracing import instrument_sqlalchemy

logger = logging.getLogger(__name__)


def _log_connect_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Database not reachable yet, retrying",
        extra={"attempt": retry_state.attempt_number, "error": str(exc)},
    )


class Database:
    """
    One async engine plus its session factory.

    Usage:
        db = Database("postgresql+asyncpg://...", name="store")
        await db.connect(metadata=StoreBase.metadata)
        async with db.session() as session:
            ...
        await db.close()
    """

    def __init__(
        self,
        url: str,
        name: str = "default",
        pool_size: int = 10,
        max_overflow: int = 20,
        echo: bool = False,
    ):
        self.url = url
        self.name = name
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        """
        Get or create the async database engine.

        Returns:
            AsyncEngine: The SQLAlchemy async engine instance.
        """
        if self._engine is None:
            if make_url(self.url).get_backend_name() == "sqlite":
                # File-backed SQLite is used for local runs and tests
                self._engine = create_async_engine(
                    self.url,
                    poolclass=NullPool,
                    echo=self._echo,
                )
            else:
                self._engine = create_async_engine(
                    self.url,
                    pool_size=self._pool_size,
                    max_overflow=self._max_overflow,
                    echo=self._echo,
                    pool_pre_ping=True,
                )
        return self._engine

    async def connect(
        self,
        metadata: MetaData | None = None,
        retries: int = 1,
        retry_delay_seconds: float = 0.0,
    ) -> None:
        """
        Initialize the session factory and make sure the database answers.

        Args:
            metadata: Tables to create if they do not exist yet.
            retries: Connection attempts before giving up.
            retry_delay_seconds: Pause between attempts.

        Raises:
            Exception: The last connection error once retries are exhausted.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, retries)),
            wait=wait_fixed(retry_delay_seconds),
            before_sleep=_log_connect_retry,
            reraise=True,
        ):
            with attempt:
                async with self.engine.begin() as conn:
                    await conn.execute(text("SELECT 1"))
                    if metadata is not None:
                        await conn.run_sync(metadata.create_all)

        self._sessionmaker = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database connection initialized", extra={"database": self.name})

    async def close(self) -> None:
        """Dispose of the engine. Safe to call more than once."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None
            logger.info("Database connection closed", extra={"database": self.name})

    async def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.warning("Database ping failed", extra={"database": self.name})
            return False

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Context manager for getting async database sessions.
        Commits on normal exit, rolls back on error.

        Yields:
            AsyncSession: An async database session.

        Raises:
            RuntimeError: If connect() has not been called.
        """
        if self._sessionmaker is None:
            raise RuntimeError(f"Database '{self.name}' not initialized. Call connect() first.")

        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


async def init_db(url: str, name: str, metadata: MetaData, settings: Settings) -> Database:
    """
    Open a database for a process entry point.

    Waits for the database to answer (db_connect_retries tries,
    db_connect_retry_delay_seconds apart) and creates missing tables.

    Args:
        url: SQLAlchemy URL.
        name: Label used in logs and health checks.
        metadata: Tables owned by this database.
        settings: Pool and retry configuration.

    Returns:
        The connected Database.
    """
    db = Database(
        url,
        name=name,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    instrument_sqlalchemy(db.engine, settings)
    await db.connect(
        metadata=metadata,
        retries=settings.db_connect_retries,
        retry_delay_seconds=settings.db_connect_retry_delay_seconds,
    )
    return db
