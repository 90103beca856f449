"""
Async SQLAlchemy engine for the arena checkpoint store.

PostgreSQL (asyncpg) is the production target; SQLite (aiosqlite) serves
local runs and the test suite. The engine is created lazily on first use.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import Config
from .models.base import Base

logger = logging.getLogger(__name__)

SLOW_QUERY_SECONDS = 1.0
CONNECT_ATTEMPTS = 3
CONNECT_BACKOFF_SECONDS = 2.0


def engine_options(database_url: str, echo: bool, pool_size: int) -> Dict[str, Any]:
    """Engine keyword arguments for the given backend."""
    if database_url.startswith("sqlite"):
        # aiosqlite runs on a single connection thread; pool sizing does not apply
        return {"echo": echo}
    return {
        "echo": echo,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "pool_size": pool_size,
        "max_overflow": pool_size * 2,
        "connect_args": {
            "command_timeout": 60,
            "server_settings": {"application_name": "agent_arena"},
        },
    }


class Database:
    """Engine and session factory for one database URL."""

    def __init__(self, database_url: str, echo: bool = False, pool_size: int = 10):
        self.database_url = database_url
        self.echo = echo
        self.pool_size = pool_size
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker] = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def backend(self) -> str:
        return self.database_url.split(":", 1)[0].split("+", 1)[0]

    async def initialize(self, attempts: int = CONNECT_ATTEMPTS, backoff: float = CONNECT_BACKOFF_SECONDS):
        """
        Create the engine and check it answers, retrying with exponential backoff.

        Raises:
            The last connection error once every attempt has failed
        """
        delay = backoff
        for attempt in range(1, attempts + 1):
            engine = create_async_engine(
                self.database_url,
                **engine_options(self.database_url, self.echo, self.pool_size),
            )
            try:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            except Exception as e:
                await engine.dispose()
                logger.error(f"{self.backend} connection attempt {attempt}/{attempts} failed: {e}")
                if attempt == attempts:
                    raise
                await asyncio.sleep(delay)
                delay *= 2
                continue

            self.engine = engine
            self.session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            self._watch_slow_queries()
            logger.info(f"Connected to {self.backend} database")
            return

    def _watch_slow_queries(self):
        @event.listens_for(self.engine.sync_engine, "before_cursor_execute")
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            context._arena_started = time.perf_counter()

        @event.listens_for(self.engine.sync_engine, "after_cursor_execute")
        def after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            elapsed = time.perf_counter() - context._arena_started
            if elapsed > SLOW_QUERY_SECONDS:
                logger.warning(f"Slow query ({elapsed:.2f}s): {statement[:100]}")

    async def create_tables(self):
        """Create the arena tables that do not exist yet."""
        if self.engine is None:
            await self.initialize()
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Arena tables ready: {', '.join(sorted(Base.metadata.tables))}")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session scope that commits on success and rolls back on error."""
        if self.session_factory is None:
            await self.initialize()

        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.error(f"Database session rolled back: {e}")
                raise

    async def health_check(self) -> Dict[str, Any]:
        """Round-trip a trivial query and report its latency."""
        result: Dict[str, Any] = {
            "status": "unhealthy",
            "backend": self.backend,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            started = time.perf_counter()
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
            result["latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
            result["status"] = "healthy"
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            result["error"] = str(e)
        return result

    async def close(self):
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None
            logger.info("Database connections closed")


async def create_database(app_config: Config, create_tables: bool = True) -> Optional[Database]:
    """Connect to DATABASE_URL, or return None when it is unset."""
    if not app_config.database_url:
        return None

    database = Database(app_config.database_url, echo=app_config.db_echo, pool_size=app_config.db_pool_size)
    await database.initialize()
    if create_tables:
        await database.create_tables()
    return database
