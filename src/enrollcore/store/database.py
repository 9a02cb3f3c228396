"""Database connection manager for the Record Store."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from enrollcore.exceptions import ExternalServiceError
from enrollcore.store.models import Base

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Driver messages that signal a lost race rather than a broken store
TRANSIENT_MARKERS = (
    "database is locked",
    "database is busy",
    "database table is locked",
    "could not serialize access",
    "deadlock detected",
)


class StaleWriteError(Exception):
    """A conditional write lost a race with a concurrent writer.

    Raised inside a unit of work to request a retry; never escapes
    ``Database.run_in_transaction``.
    """


def is_transient(exc: BaseException) -> bool:
    """Whether an error is a retryable concurrency conflict."""
    if isinstance(exc, StaleWriteError):
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig if exc.orig is not None else exc).lower()
        return any(marker in message for marker in TRANSIENT_MARKERS)
    return False


def is_unique_violation(exc: IntegrityError) -> bool:
    """Whether an IntegrityError came from a unique constraint or index."""
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return "unique constraint" in message or "duplicate key" in message


class Database:
    """Database connection manager.

    Manages SQLite database connections with WAL mode enabled. Any other
    SQLAlchemy URL (containing ``://``) is used as given.
    """

    def __init__(
        self,
        db_path: str = "enrollcore.db",
        busy_timeout: float = 30.0,
        max_attempts: int = 5,
        retry_backoff: float = 0.05,
    ) -> None:
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Use ":memory:" for in-memory DB.
            busy_timeout: Seconds a SQLite connection waits for a write lock.
            max_attempts: Attempts for units of work run via run_in_transaction.
            retry_backoff: Base back-off between attempts, multiplied by attempt number.
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    @property
    def is_sqlite(self) -> bool:
        return "://" not in self.db_path or self.db_path.startswith("sqlite")

    @property
    def engine(self) -> Engine:
        """Get or create the database engine."""
        if self._engine is None:
            if "://" in self.db_path:
                self._engine = create_engine(self.db_path, echo=False, future=True)
            elif self.db_path == ":memory:":
                # One shared connection; cross-thread access is needed for TestClient
                self._engine = create_engine(
                    "sqlite:///:memory:",
                    echo=False,
                    future=True,
                    poolclass=StaticPool,
                    connect_args={"check_same_thread": False},
                )
            else:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                self._engine = create_engine(
                    f"sqlite:///{self.db_path}",
                    echo=False,
                    future=True,
                    connect_args={"timeout": self.busy_timeout, "check_same_thread": False},
                )

            if self.is_sqlite:

                @event.listens_for(self._engine, "connect")
                def set_sqlite_pragma(dbapi_connection: object, _connection_record: object) -> None:
                    cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
                    cursor.execute("PRAGMA journal_mode=WAL")
                    cursor.execute("PRAGMA foreign_keys=ON")
                    cursor.close()

        return self._engine

    @property
    def session_factory(self) -> sessionmaker[Session]:
        """Get or create the session factory."""
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                expire_on_commit=False,
            )
        return self._session_factory

    def create_tables(self) -> None:
        """Create all tables if they don't exist."""
        Base.metadata.create_all(self.engine)

    def drop_tables(self) -> None:
        """Drop all tables. Use with caution!"""
        Base.metadata.drop_all(self.engine)

    def get_session(self) -> Session:
        """Get a new database session.

        Returns:
            A new SQLAlchemy session.
        """
        return self.session_factory()

    @contextmanager
    def _scope(self) -> Iterator[Session]:
        session = self.get_session()
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self, operation: str = "transaction") -> Iterator[Session]:
        """Open a session whose writes commit together or not at all.

        Args:
            operation: Name used in the error when the store fails.

        Yields:
            A session. Committed on normal exit, rolled back on any exception.

        Raises:
            ExternalServiceError: If the store is locked or unreachable.
        """
        try:
            with self._scope() as session:
                yield session
        except OperationalError as e:
            logger.warning("Record store failed during %s: %s", operation, e)
            raise ExternalServiceError(f"Record store unavailable during {operation}") from e

    def run_in_transaction(
        self,
        work: Callable[[Session], T],
        operation: str = "unit of work",
        max_attempts: int | None = None,
    ) -> T:
        """Run ``work`` in a fresh transaction, retrying transient conflicts.

        Domain errors raised by ``work`` propagate on the first attempt; only
        lock timeouts and lost conditional writes are retried.

        Args:
            work: Callable receiving the session. Its return value is returned.
            operation: Name used in log lines and the exhaustion error.
            max_attempts: Override for the configured attempt budget.

        Returns:
            Whatever ``work`` returned from the committed attempt.

        Raises:
            ExternalServiceError: If every attempt conflicted, or the store failed.
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                with self._scope() as session:
                    return work(session)
            except (OperationalError, StaleWriteError) as e:
                if not is_transient(e):
                    raise ExternalServiceError(f"Record store unavailable during {operation}") from e
                if attempt == attempts:
                    logger.warning("%s gave up after %d conflicting attempts", operation, attempt)
                    raise ExternalServiceError(
                        f"Record store busy; {operation} failed after {attempts} attempts"
                    ) from e
                logger.debug("%s conflicted (attempt %d/%d): %s", operation, attempt, attempts, e)
                time.sleep(self.retry_backoff * attempt)
        raise AssertionError("unreachable")

    def is_wal_mode(self) -> bool:
        """Check if WAL mode is enabled.

        Returns:
            True if WAL mode is enabled.
        """
        with self.engine.connect() as conn:
            result = conn.execute(text("PRAGMA journal_mode"))
            mode = result.scalar()
            return mode == "wal"

    def close(self) -> None:
        """Close the database connection."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
