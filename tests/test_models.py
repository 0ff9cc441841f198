"""Tests for models, validators, the state-machine kernel and logging."""

import io
import json
import uuid

import pytest
from pydantic import ValidationError

from authflow.auth import SessionManager
from authflow.exceptions import ActionInFlight, IllegalTransition
from authflow.logger import StructuredLogger
from authflow.models.auth_models import (
    AuthErrorCode,
    ErrorCategory,
    FlowResult,
    ResetFlowState,
)
from authflow.models.enums import (
    MessageSurface,
    OtpSignInState,
    ResetPhase,
    SignInMethod,
)
from authflow.models.locations import ResetLocation, SignInLocation
from authflow.services.state_machine import FlowStateMachine, InFlightGuard
from authflow.utils.audit import AuditAction, log_audit_event
from authflow.utils.general import (
    normalize_email,
    validate_email,
    validate_new_password,
    validate_password_confirmation,
)

from conftest import make_session


# ── Models ────────────────────────────────────────────────────────────────────


class TestFlowResult:
    def test_failure_derives_category_and_message(self):
        result = FlowResult.failure(AuthErrorCode.ACCOUNT_LOCKED)
        assert not result.success
        assert result.category == ErrorCategory.TERMINAL
        assert "locked" in result.message
        assert result.notice().surface == MessageSurface.FORM

    def test_explicit_message_and_surface_win(self):
        result = FlowResult.failure(
            AuthErrorCode.WRONG_CODE, "Invalid OTP", MessageSurface.CODE_FIELD,
        )
        assert result.message == "Invalid OTP"
        assert result.category == ErrorCategory.VALIDATION
        assert result.notice().surface == MessageSurface.CODE_FIELD

    def test_session_tokens_hidden_from_repr(self):
        assert "bearer-1" not in repr(make_session())


class TestResetFlowState:
    def test_resetting_requires_proof(self):
        with pytest.raises(ValidationError):
            ResetFlowState(phase=ResetPhase.RESETTING)
        state = ResetFlowState(phase=ResetPhase.RESETTING, verification_proof="u1")
        assert "u1" not in repr(state)


class TestLocations:
    def test_reset_location_round_trip(self):
        location = ResetLocation.parse("/forgot-password?step=2&email=a%40x.com")
        assert location.phase == ResetPhase.RESETTING
        assert location.email == "a@x.com"
        assert location.to_url("/forgot-password") == "/forgot-password?step=2&email=a%40x.com"

    def test_reset_location_defaults(self):
        assert ResetLocation.parse("/forgot-password").phase == ResetPhase.VERIFYING
        assert ResetLocation().to_url("/forgot-password") == "/forgot-password?step=1"

    def test_sign_in_location(self):
        location = SignInLocation.parse("/sign-in?tab=otp&redirect=%2Fx")
        assert location.method == SignInMethod.OTP
        assert location.redirect == "/x"
        assert SignInLocation.parse("/sign-in?tab=bogus").method == SignInMethod.PASSWORD


# ── Validators ────────────────────────────────────────────────────────────────


class TestValidators:
    def test_email(self):
        assert normalize_email("  A@X.Com ") == "a@x.com"
        assert validate_email("a@x.com").is_valid
        assert validate_email("").error_message == "Email address is required."
        assert not validate_email("a@").is_valid

    @pytest.mark.parametrize(
        "password, fragment",
        [
            ("Sh0rt!", "8 characters"),
            ("alllower1!", "uppercase"),
            ("ALLUPPER1!", "lowercase"),
            ("NoDigits!!", "digit"),
            ("NoSpecial1", "special"),
        ],
    )
    def test_password_policy(self, password, fragment):
        result = validate_new_password(password)
        assert not result.is_valid
        assert fragment in result.error_message

    def test_good_password_and_confirmation(self):
        assert validate_new_password("N3w!passw0rd").is_valid
        assert validate_new_password("Back\\slash1").is_valid
        assert not validate_password_confirmation("a", "b").is_valid


# ── State machine kernel ──────────────────────────────────────────────────────


class TestStateMachine:
    def test_listed_transition_and_illegal_one(self, logger):
        machine = FlowStateMachine(
            "sign-in-otp",
            OtpSignInState.AWAITING_SEND,
            {OtpSignInState.AWAITING_SEND: frozenset({OtpSignInState.AWAITING_CODE})},
            logger,
        )
        assert machine.can(OtpSignInState.AWAITING_CODE)
        machine.transition(OtpSignInState.AWAITING_CODE)
        with pytest.raises(IllegalTransition):
            machine.transition(OtpSignInState.SUCCESS)
        assert machine.state == OtpSignInState.AWAITING_CODE

    def test_in_flight_guard_is_exclusive_and_released(self):
        guard = InFlightGuard()
        with guard.hold("send"):
            assert guard.busy == "send"
            with pytest.raises(ActionInFlight):
                with guard.hold("verify"):
                    pass
        assert guard.busy is None

        with pytest.raises(RuntimeError):
            with guard.hold("send"):
                raise RuntimeError("backend blew up")
        assert guard.busy is None


class TestSessionManager:
    def test_empty_session_raises(self):
        session = SessionManager()
        assert not session.is_authenticated
        with pytest.raises(RuntimeError):
            session.get_current_session()
        session.establish(make_session(role="admin"))
        assert session.role == "admin"
        session.clear()
        assert session.bearer_token is None


# ── Logging and audit ─────────────────────────────────────────────────────────


@pytest.fixture
def captured(tmp_path):
    stream = io.StringIO()
    log = StructuredLogger(
        name=f"authflow.tests.capture.{uuid.uuid4().hex}",
        stream=stream,
        log_file=str(tmp_path / "capture.log"),
        max_bytes=1_000_000,
        backup_count=1,
    )
    return log, stream


def _entries(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


class TestLogging:
    def test_secret_extras_are_masked(self, captured):
        log, stream = captured
        log.info(
            "sign-in",
            extra={
                "bearer_token": "abc",
                "code": "123456",
                "error_code": "wrong_code",
                "flow_key": "sign-in-otp",
            },
        )
        extra = _entries(stream)[0]["extra"]
        assert extra["bearer_token"] == "***"
        assert extra["code"] == "***"
        assert extra["error_code"] == "wrong_code"
        assert extra["flow_key"] == "sign-in-otp"

    def test_audit_event_logged_and_persisted(self, captured, db):
        log, stream = captured
        log_audit_event(
            log, AuditAction.LOCKOUT, "reset-submit", "client", {"detail": "x"}, conn=db.sqlite,
        )
        entry = _entries(stream)[0]
        assert entry["message"].startswith("AUDIT: ")
        row = db.sqlite.execute("SELECT action, flow_key FROM audit_log").fetchone()
        assert tuple(row) == ("LOCKOUT", "reset-submit")

    def test_nested_extras_are_masked(self, captured):
        log, stream = captured
        log.info("nested", extra={"request": {"csrf_token": "t", "path": "/api/auth/signin"}})
        request = _entries(stream)[0]["extra"]["request"]
        assert request == {"csrf_token": "***", "path": "/api/auth/signin"}

    def test_audit_details_never_carry_secrets(self, captured, db):
        log, _ = captured
        event = log_audit_event(
            log, AuditAction.IDENTITY_VERIFIED, "reset-verify", "a@x.com",
            {"proof": "user-1", "purpose": "password_reset"}, conn=db.sqlite,
        )
        assert event.details == {"proof": "***", "purpose": "password_reset"}
        row = db.sqlite.execute("SELECT details FROM audit_log").fetchone()
        assert json.loads(row[0])["proof"] == "***"
