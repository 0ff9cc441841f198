"""
Local Store Schema.

:func:`initialize_schema` brings the SQLite file behind the durable
scoped store up to :data:`CURRENT_SCHEMA_VERSION`:

- an empty file (version 0) gets every table of :data:`_TABLES` at once;
- an older file gets the steps of :data:`_MIGRATIONS` above its version.

The upgrade and the version bump commit together under ``BEGIN
IMMEDIATE``; several windows starting at once serialise on it and the
losers find the schema already current.

Usage::

    db = DatabaseManager(sqlite_path=Path("authflow_store.db"), logger=logger)
    initialize_schema(db.sqlite, logger)
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable

from authflow.logger import StructuredLogger

__all__ = ["CURRENT_SCHEMA_VERSION", "initialize_schema"]

CURRENT_SCHEMA_VERSION: int = 2

_VERSION_TABLE: str = """
    CREATE TABLE IF NOT EXISTS schema_version (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
"""

_TABLES: dict[str, str] = {
    # ``version`` is bumped on every write, even one that stores the same
    # value again, so other processes can see the write.
    "scoped_store": """
        CREATE TABLE IF NOT EXISTS scoped_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 1,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    """,
    "audit_log": """
        CREATE TABLE IF NOT EXISTS audit_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            action TEXT NOT NULL,
            flow_key TEXT NOT NULL,
            subject TEXT NOT NULL,
            details TEXT
        )
    """,
}

_INDEXES: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_audit_log_action ON audit_log(action)",
)


def _stored_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
    return 0 if row is None else int(row[0])


def _has_column(conn: sqlite3.Connection, table: str, column: str) -> bool:
    # PRAGMA cannot take a bound parameter; only known tables are accepted.
    if table not in _TABLES:
        raise ValueError(f"Unknown table: {table!r}")
    return any(row[1] == column for row in conn.execute(f"PRAGMA table_info({table})"))


def _create_everything(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    for table, ddl in _TABLES.items():
        conn.execute(ddl)
        logger.debug("Created table %s.", table)
    for ddl in _INDEXES:
        conn.execute(ddl)


def _add_store_version(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Version 1 -> 2: write counter on ``scoped_store`` and the audit index."""
    if not _has_column(conn, "scoped_store", "version"):
        conn.execute(
            "ALTER TABLE scoped_store ADD COLUMN version INTEGER NOT NULL DEFAULT 1"
        )
        logger.info("Added scoped_store.version.")
    for ddl in _INDEXES:
        conn.execute(ddl)


Migration = Callable[[sqlite3.Connection, StructuredLogger], None]

# Target version -> step that produces it.
_MIGRATIONS: dict[int, Migration] = {
    2: _add_store_version,
}


def initialize_schema(conn: sqlite3.Connection, logger: StructuredLogger) -> None:
    """Create or upgrade the local store schema.  Safe to call on every start."""
    conn.execute(_VERSION_TABLE)
    found = _stored_version(conn)
    if found >= CURRENT_SCHEMA_VERSION:
        logger.info("Store schema at version %d.", found)
        return

    conn.execute("BEGIN IMMEDIATE")
    try:
        # Another process may have upgraded between the read and the lock.
        found = _stored_version(conn)
        if found == 0:
            _create_everything(conn, logger)
        else:
            for target in sorted(v for v in _MIGRATIONS if found < v <= CURRENT_SCHEMA_VERSION):
                logger.info("Migrating store schema to version %d.", target)
                _MIGRATIONS[target](conn, logger)
        conn.execute(
            "INSERT INTO schema_version (id, version) VALUES (1, ?) "
            "ON CONFLICT(id) DO UPDATE SET version = excluded.version, "
            "applied_at = CURRENT_TIMESTAMP",
            (CURRENT_SCHEMA_VERSION,),
        )
        conn.commit()
    except Exception:
        conn.rollback()
        logger.error("Store schema upgrade failed; still at version %d.", found)
        raise

    logger.info("Store schema upgraded from %d to %d.", found, CURRENT_SCHEMA_VERSION)
