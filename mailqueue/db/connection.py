"""
Database connection management.

Maps a workspace (tenant) to its async SQLAlchemy engine and session factory.
The queue logic itself never knows which database it is talking to.
"""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from mailqueue.config import Settings, get_settings
from mailqueue.exceptions import QueueConnectionError, storage_error
from mailqueue.observability.tracing import instrument_sqlalchemy

logger = logging.getLogger(__name__)


class ConnectionResolver(Protocol):
    """Resolves a workspace identifier to a session factory for its database."""

    async def resolve(self, workspace_id: str) -> async_sessionmaker[AsyncSession]:
        ...


def create_queue_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """
    Create an async engine for a queue database.

    SQLite connections are switched to explicit ``BEGIN IMMEDIATE``
    transactions: competing writers then wait on the database lock instead
    of failing on a deferred lock upgrade.

    Args:
        database_url: The SQLAlchemy database URL.
        **kwargs: Extra arguments for ``create_async_engine``.

    Returns:
        AsyncEngine: The engine.
    """
    url = make_url(database_url)

    if url.get_backend_name() == "sqlite":
        kwargs.pop("pool_size", None)
        kwargs.pop("max_overflow", None)
        kwargs.setdefault("connect_args", {"timeout": 30})
        engine = create_async_engine(url, **kwargs)
        _use_immediate_transactions(engine)
        return engine

    return create_async_engine(url, pool_pre_ping=True, **kwargs)


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Disable the driver's own transaction handling
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory used for queue operations."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


class StaticConnectionResolver:
    """
    Resolver that maps every workspace to the same engine.

    Used for single-database deployments and tests.
    """

    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._session_factory = create_session_factory(engine)

    async def resolve(self, workspace_id: str) -> async_sessionmaker[AsyncSession]:
        return self._session_factory


@dataclass
class _WorkspacePool:
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    last_used: float = field(default_factory=time.monotonic)


class WorkspaceConnectionManager:
    """
    Lazily creates and caches one engine per workspace database.

    Features:
    - Database URL derived from a template containing ``{workspace_id}``
    - Connectivity verified before a new pool is handed out
    - Least recently used pool closed when the pool limit is reached
    """

    def __init__(self, settings: Settings | None = None):
        """
        Initialize the manager.

        Args:
            settings: Settings to use. Defaults to the cached settings.
        """
        self._settings = settings or get_settings()
        self._pools: dict[str, _WorkspacePool] = {}
        self._lock = asyncio.Lock()

    def database_url_for(self, workspace_id: str) -> str:
        """
        Build the database URL for a workspace.

        Args:
            workspace_id: The workspace identifier.

        Returns:
            The workspace database URL.
        """
        template = self._settings.workspace_database_url_template
        if not template:
            return self._settings.database_url
        safe_id = workspace_id.replace("-", "_")
        return template.format(workspace_id=safe_id)

    async def resolve(self, workspace_id: str) -> async_sessionmaker[AsyncSession]:
        """
        Get the session factory for a workspace, creating its pool if needed.

        Raises:
            QueueConnectionError: If the workspace database cannot be reached.
        """
        pool = self._pools.get(workspace_id)
        if pool is not None:
            pool.last_used = time.monotonic()
            return pool.session_factory

        async with self._lock:
            # Another task may have created it while we waited
            pool = self._pools.get(workspace_id)
            if pool is not None:
                pool.last_used = time.monotonic()
                return pool.session_factory

            if len(self._pools) >= self._settings.database_max_workspace_pools:
                await self._close_lru_pool()

            pool = await self._create_pool(workspace_id)
            self._pools[workspace_id] = pool
            return pool.session_factory

    async def _create_pool(self, workspace_id: str) -> _WorkspacePool:
        engine = create_queue_engine(
            self.database_url_for(workspace_id),
            pool_size=self._settings.database_pool_size,
            max_overflow=self._settings.database_max_overflow,
            echo=self._settings.log_level == "DEBUG",
        )

        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            await engine.dispose()
            # The URL carries credentials, keep it out of the message
            raise QueueConnectionError(
                f"failed to connect to workspace {workspace_id} database: {e}",
                workspace_id=workspace_id,
            ) from e

        if self._settings.otel_enabled:
            instrument_sqlalchemy(engine.sync_engine)

        logger.info(
            "Workspace connection pool created",
            extra={"workspace_id": workspace_id},
        )
        return _WorkspacePool(engine=engine, session_factory=create_session_factory(engine))

    async def _close_lru_pool(self) -> None:
        workspace_id = min(self._pools, key=lambda ws: self._pools[ws].last_used)
        pool = self._pools.pop(workspace_id)
        await pool.engine.dispose()
        logger.info(
            "Closed least recently used workspace pool",
            extra={"workspace_id": workspace_id},
        )

    async def close_workspace(self, workspace_id: str) -> None:
        """Close the pool of a single workspace, if open."""
        async with self._lock:
            pool = self._pools.pop(workspace_id, None)
        if pool is not None:
            await pool.engine.dispose()

    async def close(self) -> None:
        """Close every workspace pool."""
        async with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            await pool.engine.dispose()
        logger.info("Workspace connection pools closed")

    @property
    def open_pools(self) -> list[str]:
        """Workspaces with an open pool."""
        return list(self._pools)


# Global connection manager instance
_connection_manager: WorkspaceConnectionManager | None = None


def get_connection_manager() -> WorkspaceConnectionManager:
    """
    Get or create the process-wide workspace connection manager.

    Returns:
        WorkspaceConnectionManager: The connection manager.
    """
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = WorkspaceConnectionManager()
    return _connection_manager


async def close_connections() -> None:
    """
    Close all workspace connections.
    Should be called on shutdown.
    """
    global _connection_manager
    if _connection_manager is not None:
        await _connection_manager.close()
        _connection_manager = None


@asynccontextmanager
async def workspace_session(
    resolver: ConnectionResolver,
    workspace_id: str,
) -> AsyncGenerator[AsyncSession]:
    """
    Context manager for a transactional session on a workspace database.

    Commits when the block succeeds, rolls back and re-raises otherwise.

    Yields:
        AsyncSession: A session bound to the workspace database.

    Raises:
        QueueConnectionError: If the workspace cannot be resolved.
    """
    session_factory = await resolver.resolve(workspace_id)

    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise storage_error("failed to commit transaction", e) from e
        except Exception:
            await session.rollback()
            raise
