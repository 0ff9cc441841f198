"""
Shared test fixtures.

Every test runs against a private in-memory store, a manually advanced
clock and a scripted backend, so no test touches the network, the real
``.env`` file or wall-clock time.
"""

import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from authflow.auth import SessionManager
from authflow.config import AppConfig
from authflow.database import DatabaseManager
from authflow.logger import StructuredLogger
from authflow.models.auth_models import SessionResult, VerificationResponse
from authflow.models.enums import OtpPurpose
from authflow.schema import initialize_schema
from authflow.services import create_services
from authflow.services.scoped_store import ScopedStore


# ── Fakes ─────────────────────────────────────────────────────────────────────


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_session(**overrides: Any) -> SessionResult:
    base: dict[str, Any] = dict(
        bearer_token="bearer-1",
        refresh_token="refresh-1",
        role="user",
        user_id="user-1",
        email="a@x.com",
    )
    base.update(overrides)
    return SessionResult(**base)


class FakeBackend:
    """Scripted ``AuthBackend``.

    ``script(method, *outcomes)`` queues return values (or exceptions to
    raise) for *method*; an empty queue falls back to a success.  Every
    call is recorded in ``calls``.  While ``gate`` is set, calls block
    until it is released.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.gate = None
        self._scripts: dict[str, list[Any]] = defaultdict(list)

    def script(self, method: str, *outcomes: Any) -> None:
        self._scripts[method].extend(outcomes)

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def _next(self, method: str, default: Any, **kwargs: Any) -> Any:
        self.calls.append((method, kwargs))
        if self.gate is not None:
            await self.gate.wait()
        queue = self._scripts[method]
        outcome = queue.pop(0) if queue else default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def send_otp(self, email, purpose, captcha_token=None):
        return await self._next(
            "send_otp", None, email=email, purpose=purpose, captcha_token=captcha_token,
        )

    async def verify_otp(self, email, code, purpose):
        proof = "user-1" if purpose == OtpPurpose.PASSWORD_RESET else None
        return await self._next(
            "verify_otp",
            VerificationResponse(verification_proof=proof),
            email=email,
            code=code,
            purpose=purpose,
        )

    async def sign_in_with_credential(self, email, password, captcha_token=None):
        return await self._next(
            "sign_in_with_credential",
            make_session(email=email),
            email=email,
            password=password,
            captcha_token=captcha_token,
        )

    async def sign_in_with_otp(self, email, code, captcha_token=None):
        return await self._next(
            "sign_in_with_otp",
            make_session(email=email),
            email=email,
            code=code,
            captcha_token=captcha_token,
        )

    async def reset_credential(self, proof, new_credential, captcha_token=None):
        return await self._next(
            "reset_credential",
            None,
            proof=proof,
            new_credential=new_credential,
            captcha_token=captcha_token,
        )

    async def issue_anti_forgery_token(self):
        return await self._next("issue_anti_forgery_token", "csrf-1")


class RecordingRealtime:
    def __init__(self, fail: bool = False) -> None:
        self.tokens: list[Optional[str]] = []
        self.fail = fail

    async def reconnect(self, bearer_token):
        self.tokens.append(bearer_token)
        if self.fail:
            raise ConnectionError("socket closed")


# ── Fixtures ──────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def disable_dotenv_loading(monkeypatch):
    """Prevent pydantic-settings from loading .env files in all tests."""
    import pydantic_settings.sources.providers.dotenv as ps_dotenv

    monkeypatch.setattr(ps_dotenv, "dotenv_values", lambda *a, **kw: {})


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(
        API_BASE_URL="http://backend.test",
        STORE_PATH=str(tmp_path / "store.db"),
        TOKEN_KDF_ITERATIONS=1_000,
        COUNTDOWN_TICK_S=0.01,
        CAPTCHA_HIDE_DELAY_S=0,
        SESSION_POLL_INTERVAL_S=0.01,
    )


@pytest.fixture
def logger(tmp_path) -> StructuredLogger:
    return StructuredLogger(
        name=f"authflow.tests.{uuid.uuid4().hex}",
        log_file=str(tmp_path / "authflow.log"),
        max_bytes=1_000_000,
        backup_count=1,
    )


@pytest.fixture
def db(logger):
    manager = DatabaseManager(sqlite_path=":memory:", logger=logger)
    initialize_schema(manager.sqlite, logger)
    yield manager
    manager.close()


@pytest.fixture
def store(db, logger) -> ScopedStore:
    return ScopedStore(db=db, logger=logger)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def session() -> SessionManager:
    return SessionManager()


@pytest.fixture
def realtime() -> RecordingRealtime:
    return RecordingRealtime()


@pytest.fixture
def services(db, config, session, backend, clock, realtime, logger):
    return create_services(
        db=db,
        config=config,
        session=session,
        backend=backend,
        realtime=realtime,
        clock=clock,
        vault_identity="test-host:test-user",
        logger=logger,
    )
