"""An explicitly constructed SQLite handle, shared by the stores that live in one database file."""

from collections.abc import Iterator
from contextlib import contextmanager
import os
from pathlib import Path
import sqlite3
import threading

from waypoint.constants import SQLITE_BUSY_TIMEOUT_MS, SQLITE_TIMEOUT_SECONDS
from waypoint.exception import StoreUnavailableError
from waypoint.utils.logging_config import get_logger

log = get_logger(__name__)


class SQLiteDatabase:
    """Hands out one connection per (process, thread).

    Transactions belong to connections, so threads must not share one; and connections
    must not cross a fork. Writers serialise on `begin immediate`, which is what makes
    claims atomic across every worker using the same file.
    """

    def __init__(self, db_path: str | Path, timeout_seconds: float = SQLITE_TIMEOUT_SECONDS) -> None:
        if not str(db_path).strip():
            raise ValueError("db_path is required")

        self.db_path = str(db_path)
        self.timeout_seconds = timeout_seconds
        self._local = threading.local()
        self._lock = threading.Lock()
        self._connections: list[tuple[int, sqlite3.Connection]] = []

    def __getstate__(self) -> dict:
        # Connections never cross a process boundary; the child reconnects
        return {"db_path": self.db_path, "timeout_seconds": self.timeout_seconds}

    def __setstate__(self, state: dict) -> None:
        self.__init__(state["db_path"], state["timeout_seconds"])

    def _create_connection(self) -> sqlite3.Connection:
        """Create and configure a new database connection."""

        log.debug(f"Creating new database connection to {self.db_path}")
        # isolation_level=None for manual transaction control
        conn = sqlite3.connect(
            self.db_path, timeout=self.timeout_seconds, isolation_level=None, check_same_thread=False
        )

        # WAL-mode for concurrent reads and writes
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS};")
        conn.execute("PRAGMA synchronous=NORMAL;")

        return conn

    def connection(self) -> sqlite3.Connection:
        """The calling thread's connection, created on first use."""

        pid = os.getpid()
        conn = getattr(self._local, "conn", None)

        if conn is None or getattr(self._local, "pid", None) != pid:
            try:
                conn = self._create_connection()
            except sqlite3.Error as err:
                raise StoreUnavailableError(f"Could not open database {self.db_path}: {err}") from err

            self._local.conn = conn
            self._local.pid = pid
            with self._lock:
                self._connections.append((pid, conn))

        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """A write transaction. Commits on success, rolls back on any error.

        Operational errors (locked, unreachable, out of disk) become StoreUnavailableError;
        integrity errors propagate unchanged, as they are the caller's fault.
        """

        conn = self.connection()
        try:
            conn.execute("begin immediate;")
        except sqlite3.OperationalError as err:
            raise StoreUnavailableError(f"Could not start a transaction on {self.db_path}: {err}") from err

        try:
            yield conn
        except sqlite3.OperationalError as err:
            conn.rollback()
            raise StoreUnavailableError(f"Transaction on {self.db_path} failed: {err}") from err
        except BaseException:
            conn.rollback()
            raise
        else:
            try:
                conn.commit()
            except sqlite3.OperationalError as err:
                conn.rollback()
                raise StoreUnavailableError(f"Could not commit to {self.db_path}: {err}") from err

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        """A connection for reads, with operational errors translated as for transactions."""

        conn = self.connection()
        try:
            yield conn
        except sqlite3.OperationalError as err:
            raise StoreUnavailableError(f"Could not read from {self.db_path}: {err}") from err

    def execute_script(self, statements: list[str]) -> None:
        """Run schema statements in one transaction."""

        with self.transaction() as conn:
            for statement in statements:
                conn.execute(statement)

    def close(self) -> None:
        """Close every connection this handle opened in this process."""

        log.debug(f"Closing database connections to {self.db_path}")

        pid = os.getpid()
        with self._lock:
            owned = [conn for owner, conn in self._connections if owner == pid]
            self._connections = [(owner, conn) for owner, conn in self._connections if owner != pid]

        for conn in owned:
            conn.close()

        if getattr(self._local, "pid", None) == pid:
            self._local.conn = None
