"""Database Session Manager — async engine, sessions, and SQLAlchemy error mapping.

Invariants:
    - A session that exits with an exception is rolled back, never half-committed
    - SQLAlchemy exceptions leave this module only as PersistenceError, with the
      original chained as __cause__
    - transaction() commits exactly once, on clean exit
    - Pool sizing options apply to server databases only; SQLite gets a pool
      it can actually use (StaticPool for :memory:, NullPool for files)

Design Decisions:
    - One manager per process, built by the FastAPI lifespan; services receive
      it explicitly and only the API layer reads the module-level instance
    - expire_on_commit=False: markers and balances read inside a transaction
      stay usable after it commits
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from fee_distributor.core.errors import PersistenceError

logger = logging.getLogger(__name__)

# Most specific first: IntegrityError and OperationalError subclass DBAPIError.
_ERROR_MAP: tuple[tuple[type[SQLAlchemyError], str, str], ...] = (
    (IntegrityError, "integrity constraint violated", "commit"),
    (OperationalError, "connection or operational error", "execute"),
    (DBAPIError, "database driver error", "query"),
    (SQLAlchemyError, "database operation failed", "unknown"),
)


def _engine_options(database_url: str, pool_size: int, max_overflow: int) -> dict:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            return {
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            }
        return {"poolclass": NullPool}
    return {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


class DatabaseSessionManager:
    def __init__(
        self, database_url: str, pool_size: int = 5, max_overflow: int = 5,
    ):
        self.engine = create_async_engine(
            database_url, **_engine_options(database_url, pool_size, max_overflow),
        )
        self._session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            await session.rollback()
            raise self._map_error(e) from e
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Session whose work is committed as one unit on clean exit."""
        async with self.session() as session:
            yield session
            await session.commit()

    @staticmethod
    def _map_error(error: SQLAlchemyError) -> PersistenceError:
        for error_type, message, operation in _ERROR_MAP:
            if isinstance(error, error_type):
                logger.error(f"Database {operation} failed: {error}")
                return PersistenceError(message, operation)
        return PersistenceError(str(error), "unknown")

    async def health_check(self) -> bool:
        """Readiness probe: can we run a trivial query?"""
        try:
            async with self.session() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"DB health check failed: {e}")
            return False
        return True

    async def dispose(self) -> None:
        await self.engine.dispose()


db_manager: DatabaseSessionManager | None = None


def init_db(database_url: str, **kwargs) -> DatabaseSessionManager:
    global db_manager
    db_manager = DatabaseSessionManager(database_url, **kwargs)
    return db_manager


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions."""
    if not db_manager:
        raise RuntimeError("Database not initialized")
    async with db_manager.session() as session:
        yield session
