"""
Database session management for the Library Circulation MCP Server.

Every circulation operation is one transaction: the loan row and the book's
``available`` counter change together or not at all. This module provides the
engine and the transactional scope those operations run in.

SQLite notes:
- File databases use a connection pool so threads get their own connections
- Transactions start with BEGIN IMMEDIATE, which takes the write lock up front;
  concurrent writers then wait on the busy timeout instead of failing on a
  lock upgrade
- WAL journaling lets readers proceed while a writer holds the lock
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_config
from .schema import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Manages database connections and sessions for the MCP server.

    This class provides:
    - Lazily created engine with SQLite-specific locking behaviour
    - Session factory with explicit transactions
    - Schema initialization
    """

    def __init__(self, database_url: str | None = None, busy_timeout: float | None = None):
        """
        Initialize the database manager.

        Args:
            database_url: SQLAlchemy database URL. If None, uses the configured SQLite file.
            busy_timeout: Seconds a SQLite writer waits for the lock. If None, uses config.
        """
        config = get_config()

        if database_url is None:
            # The config has already made the path absolute and created its directory
            database_url = config.get_database_url()
            logger.info("Using SQLite database at: %s", config.database_path)

        self.database_url = database_url
        self.busy_timeout = (
            busy_timeout if busy_timeout is not None else config.sqlite_busy_timeout_seconds
        )
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def is_memory(self) -> bool:
        return self.is_sqlite and (":memory:" in self.database_url or self.database_url.endswith("://"))

    @property
    def engine(self) -> Engine:
        """Get or create the database engine."""
        if self._engine is None:
            if self.is_sqlite:
                engine_kwargs = {
                    "connect_args": {
                        "check_same_thread": False,
                        "timeout": self.busy_timeout,
                    },
                    "echo": False,
                }
                if self.is_memory:
                    # One shared connection, otherwise every session sees an empty database
                    engine_kwargs["poolclass"] = StaticPool

                self._engine = create_engine(self.database_url, **engine_kwargs)
                self._install_sqlite_hooks(self._engine, wal=not self.is_memory)
            else:
                # PostgreSQL or other databases
                self._engine = create_engine(
                    self.database_url,
                    pool_size=10,
                    max_overflow=20,
                    pool_pre_ping=True,
                    echo=False,
                )

            logger.info("Database engine created: %s", self._engine.url)

        return self._engine

    @staticmethod
    def _install_sqlite_hooks(engine: Engine, wal: bool) -> None:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):  # noqa: ARG001
            # Hand transaction control to SQLAlchemy so the begin hook decides the mode
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if wal:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(engine, "begin")
        def begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @property
    def session_factory(self) -> sessionmaker:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False,
                # Keep objects usable after commit
                expire_on_commit=False,
            )
        return self._session_factory

    def create_session(self) -> Session:
        """
        Create a new database session.

        Sessions should be used with context managers or properly closed
        to prevent connection leaks.
        """
        return self.session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope for database operations.

        ```python
        with db_manager.session_scope() as session:
            book = session.get(Book, book_id)
        # Session is committed, or rolled back if the block raised
        ```
        """
        session = self.create_session()
        try:
            yield session
            session.commit()
            logger.debug("Database transaction committed successfully")
        except SQLAlchemyError:
            logger.exception("Database error, rolling back")
            session.rollback()
            raise
        except BaseException:
            # Domain errors and cancellation: nothing from this scope is kept
            session.rollback()
            raise
        finally:
            session.close()

    def init_database(self, drop_existing: bool = False) -> None:
        """
        Initialize the database schema.

        Args:
            drop_existing: If True, drop all tables before creating
        """
        engine = self.engine

        if drop_existing:
            logger.warning("Dropping all existing tables...")
            Base.metadata.drop_all(bind=engine)

        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialization complete")

    def verify_connection(self) -> bool:
        """
        Verify the database connection is working.

        Used by the server's startup health check.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database connection verified")
            return True
        except SQLAlchemyError:
            logger.exception("Database connection failed")
            return False

    def close(self) -> None:
        """Close the database connection and cleanup resources."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._engine = None
        self._session_factory = None


# Global database manager instance
_db_manager: DatabaseManager | None = None


def get_db_manager(database_url: str | None = None) -> DatabaseManager:
    """
    Get the global database manager instance.

    Args:
        database_url: Database URL (only used on first call)
    """
    global _db_manager  # noqa: PLW0603 - Singleton pattern for database manager

    if _db_manager is None:
        _db_manager = DatabaseManager(database_url)

    return _db_manager


def set_db_manager(manager: DatabaseManager | None) -> None:
    """Replace the global database manager (tests and scripts)."""
    global _db_manager  # noqa: PLW0603

    if _db_manager is not None and _db_manager is not manager:
        _db_manager.close()
    _db_manager = manager


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Convenience context manager for database sessions.

    Example:
        ```python
        with session_scope() as session:
            loans = session.query(Loan).all()
        ```
    """
    with get_db_manager().session_scope() as session:
        yield session
