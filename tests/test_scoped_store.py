"""Tests for the durable scoped store and the cross-window change listener."""

import asyncio

import pytest

from authflow.database import DatabaseManager
from authflow.schema import CURRENT_SCHEMA_VERSION, initialize_schema
from authflow.services.scoped_store import ScopedStore
from authflow.services.session_sync import StoreChangeListener


# ── Helpers ───────────────────────────────────────────────────────────────────


@pytest.fixture
def shared_file(tmp_path, logger):
    """Two stores over the same SQLite file, like two windows of one user."""
    path = tmp_path / "shared.db"
    first = DatabaseManager(sqlite_path=path, logger=logger)
    initialize_schema(first.sqlite, logger)
    second = DatabaseManager(sqlite_path=path, logger=logger)
    yield ScopedStore(first, logger), ScopedStore(second, logger)
    first.close()
    second.close()


# ── ScopedStore ───────────────────────────────────────────────────────────────


class TestScopedStore:
    def test_get_missing_key_is_none(self, store):
        assert store.get("nope") is None
        assert store.get_int("nope") == 0
        assert store.snapshot("nope") == (None, 0)

    def test_set_overwrites_and_bumps_version(self, store):
        store.set("k", "a")
        store.set("k", "a")
        assert store.get("k") == "a"
        assert store.snapshot("k") == ("a", 2)

    def test_get_int_treats_garbage_as_zero(self, store):
        store.set("attempts.x", "many")
        assert store.get_int("attempts.x") == 0

    def test_increment_starts_at_one(self, store):
        assert store.increment("c") == 1
        assert store.increment("c") == 2
        assert store.get("c") == "2"

    def test_raise_to_never_lowers(self, store):
        for _ in range(5):
            store.increment("c")
        assert store.raise_to("c", 3) == 5
        assert store.raise_to("fresh", 3) == 3

    def test_setdefault_keeps_existing_value(self, store):
        assert store.setdefault("salt", "first") == "first"
        assert store.setdefault("salt", "second") == "first"

    def test_delete_missing_key_is_noop(self, store):
        seen = []
        store.watch("k", lambda key, value: seen.append(value))
        store.delete("k")
        assert seen == []

    def test_watchers_see_local_writes(self, store):
        seen = []
        unsubscribe = store.watch("k", lambda key, value: seen.append((key, value)))
        store.set("k", "1")
        store.delete("k")
        unsubscribe()
        store.set("k", "2")
        assert seen == [("k", "1"), ("k", None)]

    def test_failing_watcher_does_not_break_write(self, store):
        def boom(key, value):
            raise RuntimeError("watcher bug")

        seen = []
        store.watch("k", boom)
        store.watch("k", lambda key, value: seen.append(value))
        store.set("k", "v")
        assert store.get("k") == "v"
        assert seen == ["v"]

    def test_counter_is_shared_between_processes(self, shared_file):
        first, second = shared_file
        first.increment("attempts.sign-in-password")
        second.increment("attempts.sign-in-password")
        assert first.get_int("attempts.sign-in-password") == 2


# ── StoreChangeListener ───────────────────────────────────────────────────────


class TestStoreChangeListener:
    async def test_external_write_is_dispatched(self, shared_file, config, logger):
        first, second = shared_file
        listener = StoreChangeListener(second, config, logger)
        received = []

        async def handler(key, value):
            received.append((key, value))

        listener.subscribe("session.changedAt", handler)
        first.set("session.changedAt", "t1")

        assert await listener.poll_once() == ["session.changedAt"]
        assert received == [("session.changedAt", "t1")]

    async def test_own_write_is_not_dispatched(self, store, config, logger):
        listener = StoreChangeListener(store, config, logger)
        received = []

        async def handler(key, value):
            received.append(value)

        listener.subscribe("session.changedAt", handler)
        store.set("session.changedAt", "t1")

        assert await listener.poll_once() == []
        assert received == []

    async def test_identical_value_rewrite_is_detected(self, shared_file, config, logger):
        first, second = shared_file
        first.set("session.changedAt", "same")
        listener = StoreChangeListener(second, config, logger)
        received = []

        async def handler(key, value):
            received.append(value)

        listener.subscribe("session.changedAt", handler)
        first.set("session.changedAt", "same")

        await listener.poll_once()
        assert received == ["same"]

    async def test_external_write_reaches_store_watchers(self, shared_file, config, logger):
        first, second = shared_file
        listener = StoreChangeListener(second, config, logger)
        seen = []
        second.watch("reset.abandoned", lambda key, value: seen.append(value))
        listener.start()
        try:
            first.set("reset.abandoned", "true")
            for _ in range(100):
                if seen:
                    break
                await asyncio.sleep(0.01)
        finally:
            await listener.stop()
        assert seen == ["true"]
        assert not listener.is_running

    async def test_failing_handler_is_isolated(self, shared_file, config, logger):
        first, second = shared_file
        listener = StoreChangeListener(second, config, logger)
        received = []

        async def broken(key, value):
            raise RuntimeError("handler bug")

        async def healthy(key, value):
            received.append(value)

        listener.subscribe("k", broken)
        listener.subscribe("k", healthy)
        first.set("k", "v")

        await listener.poll_once()
        assert received == ["v"]

    async def test_stop_when_not_started_is_safe(self, store, config, logger):
        listener = StoreChangeListener(store, config, logger)
        await listener.stop()
        assert not listener.is_running


# ── Schema ────────────────────────────────────────────────────────────────────


def _columns(conn, table):
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}


class TestSchema:
    def test_fresh_store_gets_current_version(self, logger):
        manager = DatabaseManager(sqlite_path=":memory:", logger=logger)
        initialize_schema(manager.sqlite, logger)
        initialize_schema(manager.sqlite, logger)
        version = manager.sqlite.execute("SELECT version FROM schema_version").fetchone()[0]
        assert version == CURRENT_SCHEMA_VERSION
        assert "version" in _columns(manager.sqlite, "scoped_store")
        manager.close()

    def test_version_one_store_is_migrated_in_place(self, logger):
        manager = DatabaseManager(sqlite_path=":memory:", logger=logger)
        conn = manager.sqlite
        conn.execute(
            "CREATE TABLE schema_version (id INTEGER PRIMARY KEY CHECK (id = 1), "
            "version INTEGER NOT NULL, applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP)"
        )
        conn.execute("INSERT INTO schema_version (id, version) VALUES (1, 1)")
        conn.execute(
            "CREATE TABLE scoped_store (key TEXT PRIMARY KEY, value TEXT NOT NULL, "
            "updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP)"
        )
        conn.execute(
            "CREATE TABLE audit_log (id INTEGER PRIMARY KEY AUTOINCREMENT, timestamp TEXT NOT NULL, "
            "action TEXT NOT NULL, flow_key TEXT NOT NULL, subject TEXT NOT NULL, details TEXT)"
        )
        conn.execute("INSERT INTO scoped_store (key, value) VALUES ('attempts.sign-in-password', '2')")

        initialize_schema(conn, logger)

        store = ScopedStore(manager, logger)
        assert store.snapshot("attempts.sign-in-password") == ("2", 1)
        assert store.increment("attempts.sign-in-password") == 3
        manager.close()
