"""Database connection manager with transactional read-modify-write support."""

import asyncio
import functools
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator, TypeVar

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from metering.db.base import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors raised when a concurrent transaction won the race
RETRYABLE_ERRORS = (OperationalError, IntegrityError)


class DatabaseManager:
    """
    Manages database connections and transactional sessions.

    Every session runs as a single write transaction. On SQLite the write
    lock is taken up front (BEGIN IMMEDIATE) so concurrent read-modify-write
    cycles on the same rows are serialized; other backends rely on
    SELECT ... FOR UPDATE issued by the callers.
    """

    def __init__(
        self,
        database_url: str = "sqlite:///data/metering.db",
        echo: bool = False,
        max_attempts: int = 5,
        retry_backoff_seconds: float = 0.05,
        busy_timeout_seconds: float = 30.0,
    ) -> None:
        """
        Initialize the database manager.

        Args:
            database_url: SQLAlchemy database URL
            echo: Enable SQL echo logging
            max_attempts: Attempts per transaction before giving up on conflicts
            retry_backoff_seconds: Base delay between conflicting attempts
            busy_timeout_seconds: SQLite lock wait timeout
        """
        self._database_url = database_url
        self._echo = echo
        self._max_attempts = max(1, max_attempts)
        self._retry_backoff = retry_backoff_seconds
        self._busy_timeout = busy_timeout_seconds
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self._database_url.startswith("sqlite")

    @property
    def engine(self) -> Engine:
        """Get or create the database engine."""
        if self._engine is None:
            self._engine = self._create_engine()
        return self._engine

    def _create_engine(self) -> Engine:
        """Create a new SQLAlchemy engine."""
        connect_args = {}
        if self.is_sqlite:
            # Ensure data directory exists for file databases
            if self._database_url.startswith("sqlite:///"):
                db_path = self._database_url.replace("sqlite:///", "")
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            # Sessions are driven from executor threads
            connect_args = {"check_same_thread": False, "timeout": self._busy_timeout}

        engine = create_engine(
            self._database_url,
            echo=self._echo,
            pool_pre_ping=True,
            connect_args=connect_args,
        )

        if self.is_sqlite:
            self._configure_sqlite(engine)

        return engine

    def _configure_sqlite(self, engine: Engine) -> None:
        """Configure SQLite pragmas and immediate write transactions."""

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # type: ignore
            # Take over transaction control from pysqlite
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={int(self._busy_timeout * 1000)}")
            cursor.close()

        @event.listens_for(engine, "begin")
        def begin_immediate(conn) -> None:  # type: ignore
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        logger.info("SQLite configured with WAL journal and immediate transactions")

    @property
    def session_factory(self) -> sessionmaker[Session]:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False,
            )
        return self._session_factory

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Get a database session with automatic cleanup.

        Yields:
            SQLAlchemy Session instance

        Usage:
            with db_manager.get_session() as session:
                session.query(Tenant).all()
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run_transaction(self, work: Callable[[Session], T]) -> T:
        """
        Run a read-modify-write unit of work in one transaction.

        The unit is retried from scratch when it loses a race against a
        concurrent writer (lock timeout or duplicate insert), so ``work``
        must not have side effects outside the session.

        Args:
            work: Callable receiving the session and returning a result

        Returns:
            Whatever ``work`` returned, after a successful commit

        Raises:
            OperationalError, IntegrityError: If every attempt conflicted
        """
        attempt = 1
        while True:
            try:
                with self.get_session() as session:
                    return work(session)
            except RETRYABLE_ERRORS as e:
                if attempt >= self._max_attempts:
                    logger.error(f"Transaction failed after {attempt} attempts: {e}")
                    raise
                logger.debug(f"Transaction conflict (attempt {attempt}), retrying: {e}")
                time.sleep(self._retry_backoff * attempt)
                attempt += 1

    async def run_transaction_async(self, work: Callable[[Session], T]) -> T:
        """Run ``run_transaction`` in the default thread pool executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self.run_transaction, work))

    def init_db(self) -> None:
        """Create all tables if they don't exist."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database tables created/verified")

    def drop_db(self) -> None:
        """Drop all tables. Use with caution!"""
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("All database tables dropped")

    def health_check(self) -> bool:
        """
        Check if the database connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        """Close the database engine and release resources."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed")
