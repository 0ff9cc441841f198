"""Tests for session bootstrap and cross-window session propagation."""

from authflow.auth import SessionManager
from authflow.database import DatabaseManager
from authflow.schema import initialize_schema
from authflow.services import create_services
from authflow.services.session_bootstrap import (
    BEARER_TOKEN_KEY,
    CHANGED_AT_KEY,
    ROLE_KEY,
    is_safe_redirect,
)

from conftest import FakeBackend, RecordingRealtime, make_session


class TestSessionBootstrap:
    async def test_finalize_seals_tokens_and_signals(self, services, store, session, realtime):
        bootstrap = services["session_bootstrap"]
        result = await bootstrap.finalize(make_session(bearer_token="secret-bearer"))
        assert result.success
        assert session.bearer_token == "secret-bearer"
        stored = store.get(BEARER_TOKEN_KEY)
        assert stored and "secret-bearer" not in stored
        assert store.get(ROLE_KEY) == "user"
        assert store.get(CHANGED_AT_KEY) is not None
        assert realtime.tokens == ["secret-bearer"]

    async def test_restore_reads_sealed_session(self, services, session):
        bootstrap = services["session_bootstrap"]
        await bootstrap.finalize(make_session(bearer_token="b", role="admin"))
        session.clear()
        restored = bootstrap.restore()
        assert restored.bearer_token == "b"
        assert restored.role == "admin"
        assert session.is_authenticated

    async def test_sign_out_clears_everywhere(self, services, store, session, realtime):
        bootstrap = services["session_bootstrap"]
        await bootstrap.finalize(make_session())
        await bootstrap.sign_out()
        assert not session.is_authenticated
        assert store.get(BEARER_TOKEN_KEY) is None
        assert realtime.tokens[-1] is None
        assert bootstrap.restore() is None

    async def test_realtime_failure_does_not_fail_sign_in(
        self, db, config, session, backend, clock, logger,
    ):
        services = create_services(
            db=db,
            config=config,
            session=session,
            backend=backend,
            realtime=RecordingRealtime(fail=True),
            clock=clock,
            vault_identity="test-host:test-user",
            logger=logger,
        )
        result = await services["session_bootstrap"].finalize(make_session())
        assert result.success
        assert session.is_authenticated

    def test_redirect_safety(self):
        assert is_safe_redirect("/dashboard")
        assert not is_safe_redirect(None)
        assert not is_safe_redirect("")
        assert not is_safe_redirect("//evil.test")
        assert not is_safe_redirect("https://evil.test")


class TestCrossWindow:
    async def test_sign_in_in_one_window_reaches_the_other(self, tmp_path, config, clock, logger):
        path = tmp_path / "shared.db"
        windows = []
        for _ in range(2):
            db = DatabaseManager(sqlite_path=path, logger=logger)
            initialize_schema(db.sqlite, logger)
            session = SessionManager()
            realtime = RecordingRealtime()
            services = create_services(
                db=db,
                config=config,
                session=session,
                backend=FakeBackend(),
                realtime=realtime,
                clock=clock,
                vault_identity="test-host:test-user",
                logger=logger,
            )
            windows.append((db, session, realtime, services))

        (db_a, session_a, _, services_a), (db_b, session_b, realtime_b, services_b) = windows
        try:
            await services_a["session_bootstrap"].finalize(make_session(bearer_token="shared"))
            changed = await services_b["change_listener"].poll_once()
            assert changed == [CHANGED_AT_KEY]
            assert session_b.bearer_token == "shared"
            assert realtime_b.tokens == ["shared"]

            await services_a["session_bootstrap"].sign_out()
            await services_b["change_listener"].poll_once()
            assert not session_b.is_authenticated
            assert realtime_b.tokens[-1] is None

            assert await services_a["change_listener"].poll_once() == []
        finally:
            db_a.close()
            db_b.close()
