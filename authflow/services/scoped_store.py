"""
Durable Scoped Store.

Key-value access to the ``scoped_store`` table.  The SQLite file is
shared by every window of the same user, so this is where state that
must survive a reload or be visible to another window lives:

- ``attempts.<flowKey>``: consecutive failure counters
- ``otp.<flowKey>.resendAvailableAt``: resend cooldown deadlines
- ``reset.abandoned``: abandonment marker of the reset flow
- ``session.bearerToken`` / ``session.refreshToken``: sealed tokens
- ``session.changedAt``: the cross-window session signal

Counters are updated with a single ``UPSERT ... RETURNING`` inside a
``BEGIN IMMEDIATE`` transaction, so two near-simultaneous failures can
never both observe the same post-increment value.

Every write bumps the row's ``version``.  ``snapshot()`` exposes the
``(value, version)`` pair so that :class:`StoreChangeListener` can
notice writes made by another process.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Callable
from typing import Optional

from authflow.database import DatabaseManager
from authflow.logger import StructuredLogger

StoreWatcher = Callable[[str, Optional[str]], None]
"""``watcher(key, new_value)``; ``new_value`` is ``None`` after a delete."""

Snapshot = tuple[Optional[str], int]


class ScopedStore:
    """Manages durable scoped state in local SQLite.

    Parameters
    ----------
    db:
        Initialised ``DatabaseManager`` with active SQLite connection.
    logger:
        Structured logger instance.
    """

    def __init__(self, db: DatabaseManager, logger: StructuredLogger) -> None:
        self._db = db
        self._logger = logger
        self._watchers: dict[str, list[StoreWatcher]] = {}
        self._watch_lock: threading.Lock = threading.Lock()
        # Last snapshot written by *this* instance, per key.
        self._local_writes: dict[str, Snapshot] = {}

    # ------------------------------------------------------------------
    # Generic key-value access
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[str]:
        """Read a value by key.  Returns ``None`` if not found."""
        try:
            row = self._db.sqlite.execute(
                "SELECT value FROM scoped_store WHERE key = ?",
                (key,),
            ).fetchone()
            return row["value"] if row is not None else None
        except sqlite3.Error as exc:
            self._logger.warning("Failed to read scoped_store[%s]: %s", key, exc)
            return None

    def get_int(self, key: str) -> int:
        """Read an integer counter; missing or malformed values read as 0."""
        raw = self.get(key)
        if raw is None:
            return 0
        try:
            return int(raw)
        except ValueError:
            self._logger.warning(
                "scoped_store[%s] holds a non-integer value; treating as 0.", key,
            )
            return 0

    def snapshot(self, key: str) -> Snapshot:
        """Return ``(value, version)``; a missing key is ``(None, 0)``."""
        row = self._db.sqlite.execute(
            "SELECT value, version FROM scoped_store WHERE key = ?",
            (key,),
        ).fetchone()
        if row is None:
            return (None, 0)
        return (row["value"], int(row["version"]))

    def set(self, key: str, value: str) -> None:
        """Upsert *value* under *key* and notify local watchers."""
        with self._db.transaction() as conn:
            rows = conn.execute(
                """
                INSERT INTO scoped_store (key, value, version)
                VALUES (?, ?, 1)
                ON CONFLICT(key) DO UPDATE SET
                    value      = excluded.value,
                    version    = version + 1,
                    updated_at = CURRENT_TIMESTAMP
                RETURNING value, version
                """,
                (key, value),
            ).fetchall()
        self._after_write(key, rows[0]["value"], int(rows[0]["version"]))

    def setdefault(self, key: str, value: str) -> str:
        """Store *value* only if *key* is absent; return the stored value."""
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO scoped_store (key, value, version)
                VALUES (?, ?, 1)
                ON CONFLICT(key) DO NOTHING
                """,
                (key, value),
            )
            row = conn.execute(
                "SELECT value FROM scoped_store WHERE key = ?", (key,),
            ).fetchone()
        return row["value"]

    def delete(self, key: str) -> None:
        """Remove *key*.  Deleting a missing key is a no-op."""
        with self._db.transaction() as conn:
            removed = conn.execute(
                "DELETE FROM scoped_store WHERE key = ?", (key,),
            ).rowcount
        if removed:
            self._after_write(key, None, 0)

    # ------------------------------------------------------------------
    # Atomic counters
    # ------------------------------------------------------------------

    def increment(self, key: str) -> int:
        """Atomically add one to the counter at *key* and return the new value."""
        with self._db.transaction() as conn:
            rows = conn.execute(
                """
                INSERT INTO scoped_store (key, value, version)
                VALUES (?, '1', 1)
                ON CONFLICT(key) DO UPDATE SET
                    value      = CAST(CAST(value AS INTEGER) + 1 AS TEXT),
                    version    = version + 1,
                    updated_at = CURRENT_TIMESTAMP
                RETURNING value, version
                """,
                (key,),
            ).fetchall()
        value, version = rows[0]["value"], int(rows[0]["version"])
        self._after_write(key, value, version)
        return int(value)

    def raise_to(self, key: str, floor: int) -> int:
        """Atomically set the counter at *key* to ``max(current, floor)``."""
        with self._db.transaction() as conn:
            rows = conn.execute(
                """
                INSERT INTO scoped_store (key, value, version)
                VALUES (?, CAST(? AS TEXT), 1)
                ON CONFLICT(key) DO UPDATE SET
                    value      = CAST(MAX(CAST(value AS INTEGER),
                                          CAST(excluded.value AS INTEGER)) AS TEXT),
                    version    = version + 1,
                    updated_at = CURRENT_TIMESTAMP
                RETURNING value, version
                """,
                (key, floor),
            ).fetchall()
        value, version = rows[0]["value"], int(rows[0]["version"])
        self._after_write(key, value, version)
        return int(value)

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    def watch(self, key: str, watcher: StoreWatcher) -> Callable[[], None]:
        """Register *watcher* for changes to *key*.

        Returns a callable that removes the registration.
        """
        with self._watch_lock:
            self._watchers.setdefault(key, []).append(watcher)

        def _unsubscribe() -> None:
            with self._watch_lock:
                watchers = self._watchers.get(key, [])
                if watcher in watchers:
                    watchers.remove(watcher)

        return _unsubscribe

    def watched_keys(self) -> list[str]:
        with self._watch_lock:
            return [key for key, watchers in self._watchers.items() if watchers]

    def is_local_write(self, key: str, snapshot: Snapshot) -> bool:
        """``True`` when *snapshot* is the last value this instance wrote."""
        return self._local_writes.get(key) == snapshot

    def notify(self, key: str, value: Optional[str]) -> None:
        """Deliver a change of *key* to every registered watcher.

        Called after each local write, and by the change listener for
        writes made by another process.
        """
        with self._watch_lock:
            watchers = list(self._watchers.get(key, []))
        for watcher in watchers:
            try:
                watcher(key, value)
            except Exception:
                self._logger.error(
                    "Store watcher for %s raised.", key, exc_info=True,
                )

    def _after_write(self, key: str, value: Optional[str], version: int) -> None:
        self._local_writes[key] = (value, version)
        self.notify(key, value)
