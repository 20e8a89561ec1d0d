import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import MetaData, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from iptv_catalog.errors import PersistenceError
from iptv_catalog.utils.file_operations import remove_file
from iptv_catalog.utils.logging_helpers import DEFAULT_SESSION_KEY

logger = logging.getLogger(__name__)


def store_file_name(prefix: str, session_key: str | None) -> str:
    """
    Derive the database file name for a session.

    The default session uses '<prefix>.db'; any other session uses
    '<prefix>_<first 16 hex chars of sha256(key)>.db' so restarts reattach
    to the same file.
    """
    key = (session_key or "").strip()
    if not key or key == DEFAULT_SESSION_KEY:
        return f"{prefix}.db"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}_{digest}.db"


def _create_session_factory(engine):
    """Create async session factory from engine"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )


def _configure_sqlite(dbapi_conn, _):
    """Configure SQLite connection parameters"""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute("PRAGMA synchronous = NORMAL")
    cursor.execute("PRAGMA cache_size = -16000")
    cursor.close()


class SqliteStore:
    """One SQLite file with its engine, schema and session factory"""

    def __init__(self, path: Path | str, metadata: MetaData):
        self.path = Path(path)
        self._metadata = metadata
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    async def open(self) -> None:
        """Create the engine and the schema (idempotent)"""
        if self._engine is not None:
            return

        logger.debug("Opening database at %s", self.path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            engine = create_async_engine(
                f"sqlite+aiosqlite:///{self.path}",
                echo=False,
                pool_pre_ping=True,
                connect_args={"timeout": 30, "check_same_thread": False},
            )
            event.listen(engine.sync_engine, "connect", _configure_sqlite)

            async with engine.begin() as conn:
                await conn.run_sync(self._metadata.create_all)
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"Cannot open database {self.path}: {exc}") from exc

        self._engine = engine
        self._session_factory = _create_session_factory(engine)

    @asynccontextmanager
    async def session_scope(self, *, begin: bool = True) -> AsyncIterator[AsyncSession]:
        """
        Provide an async session with automatic transaction handling.

        Args:
            begin: When True (default), wrap the session in `session.begin()` for auto commit/rollback.
                   When False, caller is responsible for transaction demarcation and commit/rollback.

        Raises:
            PersistenceError: On any database failure inside the scope
        """
        if self._session_factory is None:
            await self.open()
        if self._session_factory is None:
            raise PersistenceError(f"Database {self.path.name} is not open")

        try:
            async with self._session_factory() as session:
                if begin:
                    async with session.begin():
                        yield session
                else:
                    try:
                        yield session
                    except Exception:
                        await session.rollback()
                        raise
                    else:
                        await session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Database error on {self.path.name}: {exc}") from exc

    async def close(self) -> None:
        """Close database connections"""
        if self._engine is not None:
            await self._engine.dispose()
            logger.debug("Database connections closed for %s", self.path)
        self._engine = None
        self._session_factory = None

    async def delete(self) -> bool:
        """Close the store and remove its file(s) from disk"""
        await self.close()
        removed = await remove_file(self.path)
        for sidecar in ("-wal", "-shm"):
            await remove_file(self.path.with_name(self.path.name + sidecar))
        return removed
