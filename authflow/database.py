"""
Database Abstraction Layer.

Owns the local SQLite connection that backs the durable scoped store.
The same file is opened by every window / process of the same user, so
it plays the role a browser's origin-scoped storage plays for a web
client: values survive reloads and are visible across "tabs".

This module only manages the raw database *connection*; key-value
semantics live in :class:`authflow.services.scoped_store.ScopedStore`.

Usage (dependency injection at startup)::

    from authflow.database import DatabaseManager
    from authflow.logger import StructuredLogger

    db = DatabaseManager(
        sqlite_path=Path("authflow_store.db"),
        logger=StructuredLogger(name="database"),
    )
    # Inject `db` into services that need it.
"""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Union

from authflow.logger import StructuredLogger

_MEMORY: str = ":memory:"


class DatabaseManager:
    """Manages the connection to the local SQLite store.

    Fully configured at construction time via dependency injection.

    Parameters
    ----------
    sqlite_path:
        Filesystem path for the SQLite database file, or ``":memory:"``
        for a private in-process store (used by tests).
    logger:
        A ``StructuredLogger`` instance for structured JSON log output.
    """

    def __init__(
        self,
        sqlite_path: Union[Path, str],
        logger: StructuredLogger,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._write_lock: threading.RLock = threading.RLock()
        self._path: str = str(sqlite_path)
        self._sqlite_conn: sqlite3.Connection = self._connect_sqlite(self._path)

    # ------------------------------------------------------------------
    # Public properties
    # ------------------------------------------------------------------

    @property
    def sqlite(self) -> sqlite3.Connection:
        """Return the initialised SQLite connection."""
        return self._sqlite_conn

    @property
    def path(self) -> str:
        """Filesystem path (or ``":memory:"``) of the open database."""
        return self._path

    @property
    def write_lock(self) -> threading.RLock:
        """Return the write lock guarding read-modify-write sequences.

        All code that performs SQLite writes (INSERT, UPDATE, DELETE,
        or any operation followed by ``commit()``) should acquire this
        lock first::

            with db.write_lock:
                db.sqlite.execute("INSERT ...")
                db.sqlite.commit()
        """
        return self._write_lock

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """Run a block inside ``BEGIN IMMEDIATE`` under the write lock.

        ``BEGIN IMMEDIATE`` takes SQLite's reserved lock up front, so a
        read-modify-write inside the block is atomic even against other
        processes sharing the same file.  On exception the transaction is
        rolled back and the error re-raised.
        """
        with self._write_lock:
            conn = self._sqlite_conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                self._logger.error(
                    "Store transaction rolled back due to exception.",
                    exc_info=True,
                )
                raise

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the local SQLite connection.

        Safe to call multiple times; subsequent calls are no-ops.
        """
        with self._write_lock:
            try:
                self._sqlite_conn.close()
                self._logger.info("SQLite connection closed.")
            except sqlite3.ProgrammingError:
                # Already closed.
                pass

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _connect_sqlite(self, path: str) -> sqlite3.Connection:
        """Open (or create) a SQLite database and apply the connection pragmas.

        The connection runs in autocommit mode (``isolation_level=None``)
        so that :meth:`transaction` controls transaction boundaries
        explicitly.

        Raises
        ------
        PermissionError
            If the OS denies access to the database file or its directory.
        """
        try:
            conn = sqlite3.connect(
                path,
                check_same_thread=False,
                isolation_level=None,
                timeout=5.0,
            )
            conn.row_factory = sqlite3.Row
            if path != _MEMORY:
                # WAL lets other processes read while one of them writes.
                conn.execute("PRAGMA journal_mode=WAL;")
            self._logger.info("SQLite store opened at %s", path)
            return conn
        except PermissionError as exc:
            msg = (
                f"Cannot open the local store at '{path}'. "
                "The file or its directory may be read-only or locked by "
                "another process.  Please check file permissions and try again."
            )
            self._logger.error(msg)
            raise PermissionError(msg) from exc
