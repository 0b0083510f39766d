"""
core/database.py -- Shared SQLAlchemy engine and the write-serialization controller.

Every store (auth/store.py, catalog/store.py) is attached to one Database.
Reads and writes take different paths:

  read():  a pooled connection, no locking. Any number of readers run in
           parallel, including while a writer is pending.

  write(): WriteSerializer.run(). Acquires the single process-wide writer
           permit, opens a transaction, runs the closure, commits, releases.
           If the store reports a serialization failure, the transaction is
           rolled back and the WHOLE closure runs again on a fresh
           transaction, up to max_attempts times. Exhaustion raises
           WriteConflict. Any other exception rolls back and propagates
           unchanged.

Because a closure can run more than once, it must not have side effects
outside the connection it is given (no file writes, no counters). Compute
expensive inputs such as bcrypt hashes before calling write().

SQLite specifics:
  pysqlite's implicit BEGIN only starts a transaction at the first DML
  statement, so a "read, then insert" closure would read outside the
  transaction. We disable that behaviour and emit BEGIN ourselves -- BEGIN
  IMMEDIATE for write connections so the database-level write lock is taken
  before the first read. WAL mode keeps readers unblocked.

PostgreSQL specifics:
  Write connections run at SERIALIZABLE isolation. SQLSTATE 40001 / 40P01
  are the conflicts that trigger a retry.

Layer rule: core/ is the kernel. No imports from api/, auth/, or catalog/.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Connection, Engine, make_url
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.sql import Executable

from core.errors import WriteConflict

logger = logging.getLogger("dim.db")

T = TypeVar("T")

_DEFAULT_MAX_ATTEMPTS = 5

_SERIALIZATION_SQLSTATES = frozenset({"40001", "40P01"})
_SQLITE_BUSY_MARKERS = ("database is locked", "database table is locked", "database is busy")

# Execution option that marks a connection as belonging to the writer path.
_WRITE_OPTION = "dim_write"


class ConflictRetry(Exception):
    """Raised inside a write closure to ask for a fresh attempt.

    insert_or_get() raises this when its INSERT loses a unique-key race; the
    next attempt's lookup then finds the winner's row.
    """


def is_serialization_failure(exc: BaseException) -> bool:
    """Return True if exc means "another writer got there first, try again"."""
    if isinstance(exc, ConflictRetry):
        return True
    if not isinstance(exc, DBAPIError) or isinstance(exc, IntegrityError):
        return False
    orig = exc.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate in _SERIALIZATION_SQLSTATES:
        return True
    message = str(orig).lower()
    return any(marker in message for marker in _SQLITE_BUSY_MARKERS)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite_connection(dbapi_conn, connection_record) -> None:
    """Hand transaction control to SQLAlchemy and enable WAL.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def _emit_sqlite_begin(conn: Connection) -> None:
    if conn.get_execution_options().get(_WRITE_OPTION):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
    else:
        conn.exec_driver_sql("BEGIN")


def _ensure_sqlite_dir(db_url: str) -> None:
    database = make_url(db_url).database
    if database and database != ":memory:" and not database.startswith("file:"):
        Path(database).parent.mkdir(parents=True, exist_ok=True)


# ---------------------------------------------------------------------------
# Write serialization
# ---------------------------------------------------------------------------


class WriteSerializer:
    """Single-writer permit plus bounded conflict retry.

    Usage:
        writer = WriteSerializer(engine)
        new_id = writer.run(lambda conn: conn.execute(stmt).inserted_primary_key[0])
    """

    def __init__(self, engine: Engine, max_attempts: int = _DEFAULT_MAX_ATTEMPTS, serializable: bool = False) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._engine = engine
        self._lock = threading.Lock()
        self._serializable = serializable
        self.max_attempts = max_attempts

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        options: dict = {_WRITE_OPTION: True}
        if self._serializable:
            options["isolation_level"] = "SERIALIZABLE"
        with self._engine.connect() as conn:
            conn.execution_options(**options)
            # begin() commits on clean exit and rolls back on ANY exception,
            # KeyboardInterrupt and task cancellation included.
            with conn.begin():
                yield conn

    def run(self, fn: Callable[[Connection], T], max_attempts: int | None = None) -> T:
        """Run fn(conn) in a serialized write transaction and return its result.

        Raises WriteConflict once max_attempts attempts have all hit a
        serialization failure. Every other exception propagates unchanged.
        """
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        for attempt in range(1, attempts + 1):
            with self._lock:
                try:
                    with self._transaction() as conn:
                        return fn(conn)
                except Exception as exc:
                    if not is_serialization_failure(exc):
                        raise
                    logger.warning("Write conflict on attempt %d/%d: %s", attempt, attempts, exc)

        logger.error("Write abandoned after %d conflicting attempts", attempts)
        raise WriteConflict()


def insert_or_get(conn: Connection, lookup: Executable, insert: Executable) -> int:
    """Return the id found by lookup, or run insert and return the new id.

    The two statements are not atomic on their own, so this must only be called
    inside WriteSerializer.run(): the permit and the transaction isolation
    make concurrent callers converge on one row. A unique-key violation on the
    insert means some other writer (another process, say) won the race; it is
    turned into ConflictRetry so the next attempt adopts the winner's id.
    """
    existing = conn.execute(lookup).scalar()
    if existing is not None:
        return existing
    try:
        result = conn.execute(insert)
    except IntegrityError as exc:
        raise ConflictRetry("natural key inserted concurrently") from exc
    return result.inserted_primary_key[0]


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


class Database:
    """Engine owner shared by every store in the process.

    Usage:
        db = Database("sqlite:///data/dim.db")
        with db.read() as conn:
            conn.execute(...)
        db.write(lambda conn: conn.execute(...))
        db.close()
    """

    def __init__(self, db_url: str, max_write_attempts: int = _DEFAULT_MAX_ATTEMPTS) -> None:
        self.is_sqlite = db_url.startswith("sqlite")
        connect_args: dict = {}
        if self.is_sqlite:
            connect_args["check_same_thread"] = False
            _ensure_sqlite_dir(db_url)
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if self.is_sqlite:
            event.listen(self.engine, "connect", _configure_sqlite_connection)
            event.listen(self.engine, "begin", _emit_sqlite_begin)
        self.writer = WriteSerializer(self.engine, max_write_attempts, serializable=not self.is_sqlite)

    @contextmanager
    def read(self) -> Iterator[Connection]:
        """Yield a connection for reads. Never takes the writer permit."""
        with self.engine.connect() as conn:
            yield conn

    def write(self, fn: Callable[[Connection], T], max_attempts: int | None = None) -> T:
        return self.writer.run(fn, max_attempts)

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by the health endpoint."""
        try:
            with self.read() as conn:
                conn.execute(text("SELECT 1"))
        except DBAPIError:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()
