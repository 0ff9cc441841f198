"""Tests for the two-phase email + password sign-in flow."""

import asyncio

import pytest

from authflow.exceptions import BackendRejection
from authflow.models.auth_models import CAPTCHA_NOW_REQUIRED_MESSAGE, AuthErrorCode
from authflow.models.enums import CredentialSignInState, FlowKey, MessageSurface
from authflow.services.captcha_challenge import CaptchaChallengeController
from authflow.services.credential_sign_in import CredentialSignInFlow

from conftest import make_session

State = CredentialSignInState


# ── Helpers ───────────────────────────────────────────────────────────────────


def _invalid():
    return BackendRejection(AuthErrorCode.INVALID_CREDENTIAL, "Incorrect email or password.")


@pytest.fixture
def flow(services):
    f = services["credential_sign_in"]
    yield f
    f.teardown()


def _ready(flow, email="a@x.com", password="hunter2!"):
    flow.set_email(email)
    flow.continue_to_password()
    flow.set_password(password)


# ── Phases ────────────────────────────────────────────────────────────────────


class TestPhases:
    def test_continue_needs_an_email_and_makes_no_call(self, flow, backend):
        result = flow.continue_to_password()
        assert result.error_code == AuthErrorCode.VALIDATION_ERROR
        assert result.surface == MessageSurface.EMAIL_FIELD
        assert flow.state == State.ENTERING_EMAIL

        flow.set_email("nobody@nowhere.test")
        assert flow.continue_to_password().success
        assert flow.state == State.ENTERING_PASSWORD
        assert backend.calls == []

    def test_edit_email_discards_password(self, flow):
        _ready(flow)
        assert flow.has_password
        assert flow.edit_email()
        assert flow.state == State.ENTERING_EMAIL
        assert not flow.has_password

    def test_email_is_read_only_during_password_step(self, flow):
        _ready(flow)
        assert not flow.set_email("other@x.com")
        assert flow.email == "a@x.com"

    async def test_empty_password_is_local_error(self, flow, backend):
        _ready(flow, password="")
        result = await flow.submit()
        assert result.error_code == AuthErrorCode.VALIDATION_ERROR
        assert backend.calls == []


# ── Submission ────────────────────────────────────────────────────────────────


class TestSubmit:
    async def test_success_establishes_session(self, flow, backend, session, store):
        _ready(flow)
        result = await flow.submit()
        assert result.success
        assert result.route == "/user"
        assert flow.state == State.SUCCESS
        assert session.is_authenticated
        assert backend.calls_to("sign_in_with_credential")[0]["captcha_token"] is None
        assert not flow.has_password

    async def test_admin_role_and_redirect(self, flow, backend):
        backend.script("sign_in_with_credential", make_session(role="admin"))
        _ready(flow)
        assert (await flow.submit()).route == "/admin"

    async def test_safe_redirect_wins_over_role(self, services, backend):
        flow = services["credential_sign_in"]
        _ready(flow)
        assert (await flow.submit(redirect="/billing")).route == "/billing"

    async def test_offsite_redirect_is_ignored(self, flow):
        _ready(flow)
        assert (await flow.submit(redirect="//evil.test/x")).route == "/user"

    async def test_three_failures_require_captcha(self, flow, backend, services):
        backend.script("sign_in_with_credential", _invalid(), _invalid(), _invalid())
        _ready(flow)

        for _ in range(2):
            result = await flow.submit()
            assert result.error_code == AuthErrorCode.INVALID_CREDENTIAL
            assert not result.captcha_required
            assert not flow.captcha.visible

        third = await flow.submit()
        assert third.error_code == AuthErrorCode.INVALID_CREDENTIAL
        assert third.surface == MessageSurface.FORM
        assert third.captcha_required
        assert flow.captcha.visible
        assert flow.captcha.error_message == CAPTCHA_NOW_REQUIRED_MESSAGE
        assert flow.state == State.ENTERING_PASSWORD
        assert flow.email == "a@x.com"
        assert flow.has_password

        blocked = await flow.submit()
        assert blocked.error_code == AuthErrorCode.MISSING_CHALLENGE
        assert blocked.surface == MessageSurface.CAPTCHA
        assert len(backend.calls_to("sign_in_with_credential")) == 3

        flow.captcha.on_verified("cap")
        result = await flow.submit()
        assert result.success
        assert backend.calls_to("sign_in_with_credential")[-1]["captcha_token"] == "cap"
        assert services["attempt_guard"].count(FlowKey.SIGN_IN_PASSWORD) == 0

    async def test_escalation_survives_reload(self, flow, backend, services, config, logger):
        backend.script("sign_in_with_credential", _invalid(), _invalid(), _invalid())
        _ready(flow)
        for _ in range(3):
            await flow.submit()

        reloaded = CredentialSignInFlow(
            backend=backend,
            guard=services["attempt_guard"],
            captcha=CaptchaChallengeController(FlowKey.SIGN_IN_PASSWORD, config, logger),
            bootstrap=services["session_bootstrap"],
            logger=logger,
        )
        reloaded.mount()
        assert reloaded.captcha_required
        assert reloaded.captcha.visible

    async def test_failures_do_not_leak_into_otp_flow(self, flow, backend, services):
        backend.script("sign_in_with_credential", _invalid(), _invalid(), _invalid())
        _ready(flow)
        for _ in range(3):
            await flow.submit()
        assert not services["attempt_guard"].is_captcha_required(FlowKey.SIGN_IN_OTP)

    async def test_backend_captcha_demand_is_not_a_failure(self, flow, backend, services):
        backend.script(
            "sign_in_with_credential",
            BackendRejection(AuthErrorCode.CAPTCHA_REQUIRED, requires_captcha=True),
        )
        _ready(flow)
        result = await flow.submit()
        assert result.error_code == AuthErrorCode.CAPTCHA_REQUIRED
        assert result.surface == MessageSurface.CAPTCHA
        assert flow.captcha.visible
        assert flow.state == State.ENTERING_PASSWORD
        assert services["attempt_guard"].count(FlowKey.SIGN_IN_PASSWORD) == 3

    async def test_network_error_is_retryable_and_uncounted(self, flow, backend, services):
        backend.script("sign_in_with_credential", BackendRejection(AuthErrorCode.NETWORK_ERROR))
        _ready(flow)
        result = await flow.submit()
        assert result.error_code == AuthErrorCode.NETWORK_ERROR
        assert flow.state == State.ENTERING_PASSWORD
        assert services["attempt_guard"].count(FlowKey.SIGN_IN_PASSWORD) == 0
        assert (await flow.submit()).success

    async def test_lockout_is_terminal_and_verbatim(self, flow, backend):
        detail = "Account is locked. Try again after 10:30 AM"
        backend.script(
            "sign_in_with_credential",
            BackendRejection(AuthErrorCode.ACCOUNT_LOCKED, detail, detail=detail),
        )
        _ready(flow)
        result = await flow.submit()
        assert result.message == detail
        assert flow.state == State.REJECTED
        assert not flow.edit_email()

        again = await flow.submit()
        assert again.error_code == AuthErrorCode.ACCOUNT_LOCKED
        assert again.message == detail
        assert not again.issued
        assert len(backend.calls_to("sign_in_with_credential")) == 1

    async def test_suspension_is_counted_and_terminal(self, flow, backend, services):
        backend.script(
            "sign_in_with_credential",
            BackendRejection(AuthErrorCode.ACCOUNT_SUSPENDED),
        )
        _ready(flow)
        result = await flow.submit()
        assert result.error_code == AuthErrorCode.ACCOUNT_SUSPENDED
        assert services["attempt_guard"].count(FlowKey.SIGN_IN_PASSWORD) == 1

        again = await flow.submit()
        assert again.error_code == AuthErrorCode.ACCOUNT_SUSPENDED
        assert not again.issued
        assert len(backend.calls_to("sign_in_with_credential")) == 1

        assert flow.edit_email()
        assert flow.state == State.ENTERING_EMAIL


# ── Single-use CAPTCHA token ──────────────────────────────────────────────────


class TestTokenSingleUse:
    async def test_pending_submission_token_is_never_reattached(self, flow, services, backend):
        services["attempt_guard"].require_captcha(FlowKey.SIGN_IN_PASSWORD)
        _ready(flow)
        flow.captcha.on_verified("tok-1")

        backend.script(
            "sign_in_with_credential", BackendRejection(AuthErrorCode.NETWORK_ERROR),
        )
        backend.gate = asyncio.Event()
        first = asyncio.create_task(flow.submit())
        await asyncio.sleep(0)
        assert flow.state == State.SUBMITTING
        assert not flow.captcha.has_verified_token

        second = await flow.submit()
        assert second.error_code == AuthErrorCode.ACTION_IN_FLIGHT

        backend.gate.set()
        assert (await first).error_code == AuthErrorCode.NETWORK_ERROR
        assert flow.state == State.ENTERING_PASSWORD

        third = await flow.submit()
        assert third.error_code == AuthErrorCode.MISSING_CHALLENGE
        assert third.surface == MessageSurface.CAPTCHA
        tokens = [c["captcha_token"] for c in backend.calls_to("sign_in_with_credential")]
        assert tokens == ["tok-1"]
