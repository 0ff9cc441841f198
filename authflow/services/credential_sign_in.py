"""
Credential Sign-In Flow.

Two-phase (email, then password) sign-in on flow key ``sign-in-password``:

    entering_email -> entering_password -> submitting -> success
                            ^    |                    \
                            |    +-> entering_email    -> rejected
                            +-------------------------------+

Moving on to the password makes no network call: account existence is
never checked client-side.  Every submission goes through the shared
``AttemptGuard`` (failure counting, lockout) and this flow's own
``CaptchaChallengeController`` (single-use tokens).

All outcomes are returned as ``FlowResult``; nothing raises to the view.
"""

from __future__ import annotations

from typing import Optional

from authflow.database import DatabaseManager
from authflow.exceptions import BackendRejection, MissingChallenge
from authflow.logger import StructuredLogger
from authflow.models.auth_models import (
    CAPTCHA_NOW_REQUIRED_MESSAGE,
    ERROR_MESSAGES,
    AuthErrorCode,
    FlowNotice,
    FlowResult,
)
from authflow.models.enums import (
    CaptchaState,
    CredentialSignInState,
    FlowKey,
    MessageSurface,
)
from authflow.services.attempt_guard import AttemptGuard
from authflow.services.auth_backend import AuthBackend
from authflow.services.base_service import BaseService
from authflow.services.captcha_challenge import CaptchaChallengeController
from authflow.services.session_bootstrap import SessionBootstrap
from authflow.services.state_machine import FlowStateMachine
from authflow.utils.general import normalize_email

State = CredentialSignInState

_TRANSITIONS: dict[State, frozenset[State]] = {
    State.ENTERING_EMAIL: frozenset({State.ENTERING_PASSWORD}),
    State.ENTERING_PASSWORD: frozenset({State.ENTERING_EMAIL, State.SUBMITTING}),
    State.SUBMITTING: frozenset({State.SUCCESS, State.REJECTED}),
    State.REJECTED: frozenset({State.ENTERING_PASSWORD, State.ENTERING_EMAIL}),
}

EMAIL_REQUIRED_MESSAGE: str = "Email address is required."
PASSWORD_REQUIRED_MESSAGE: str = "Password is required."

_CAPTCHA_CODES: frozenset[AuthErrorCode] = frozenset({
    AuthErrorCode.CAPTCHA_REQUIRED,
    AuthErrorCode.CAPTCHA_FAILED,
})
# Rejections the backend counts as a failed sign-in attempt.
_COUNTED_CODES: frozenset[AuthErrorCode] = frozenset({
    AuthErrorCode.INVALID_CREDENTIAL,
    AuthErrorCode.ACCOUNT_SUSPENDED,
})


class CredentialSignInFlow(BaseService):
    """Email + password sign-in.

    Parameters
    ----------
    backend:
        Verifies credentials.
    guard:
        Shared failure counter / lockout holder.
    captcha:
        CAPTCHA controller for this flow key.
    bootstrap:
        Finalises a successful sign-in into a session.
    logger:
        Structured logger instance.
    db:
        Optional database for persisted audit events.
    flow_key:
        Defaults to ``sign-in-password``.
    """

    def __init__(
        self,
        backend: AuthBackend,
        guard: AttemptGuard,
        captcha: CaptchaChallengeController,
        bootstrap: SessionBootstrap,
        logger: StructuredLogger,
        db: Optional[DatabaseManager] = None,
        flow_key: FlowKey = FlowKey.SIGN_IN_PASSWORD,
    ) -> None:
        super().__init__(logger, db)
        self._backend = backend
        self._guard = guard
        self._captcha = captcha
        self._bootstrap = bootstrap
        self._flow_key = flow_key
        self._machine: FlowStateMachine[State] = FlowStateMachine(
            str(flow_key), State.ENTERING_EMAIL, _TRANSITIONS, logger,
        )
        self._email: str = ""
        self._password: str = ""
        self._notice: Optional[FlowNotice] = None
        self._rejected: Optional[FlowResult] = None

    # ------------------------------------------------------------------
    # View-facing state
    # ------------------------------------------------------------------

    @property
    def state(self) -> State:
        return self._machine.state

    @property
    def email(self) -> str:
        return self._email

    @property
    def has_password(self) -> bool:
        return bool(self._password)

    @property
    def notice(self) -> Optional[FlowNotice]:
        return self._notice

    @property
    def captcha(self) -> CaptchaChallengeController:
        return self._captcha

    @property
    def captcha_required(self) -> bool:
        return self._guard.is_captcha_required(self._flow_key)

    @property
    def is_locked(self) -> bool:
        return self._guard.is_locked(self._flow_key)

    def mount(self) -> None:
        """Show the widget right away when a reload finds escalation on."""
        if self.captcha_required and not self._captcha.visible:
            self._captcha.request_challenge(escalation=True)

    def teardown(self) -> None:
        self._captcha.teardown()
        self.clear_password()

    # ------------------------------------------------------------------
    # Field input
    # ------------------------------------------------------------------

    def set_email(self, email: str) -> bool:
        """Type into the email field; only accepted while it is editable."""
        if self.state != State.ENTERING_EMAIL:
            return False
        self._email = normalize_email(email)
        return True

    def set_password(self, password: str) -> bool:
        if self.state != State.ENTERING_PASSWORD:
            return False
        self._password = password
        return True

    def clear_password(self) -> None:
        self._password = ""

    def continue_to_password(self) -> FlowResult:
        """Advance to the password step.  No network call is made."""
        if not self._email:
            return self._fail(
                AuthErrorCode.VALIDATION_ERROR,
                EMAIL_REQUIRED_MESSAGE,
                MessageSurface.EMAIL_FIELD,
            )
        self._machine.transition(State.ENTERING_PASSWORD)
        self._notice = None
        return FlowResult(success=True)

    def edit_email(self) -> bool:
        """Go back to the email step.  The entered password is discarded."""
        if not self._machine.can(State.ENTERING_EMAIL) or self.is_locked:
            return False
        self._machine.transition(State.ENTERING_EMAIL)
        self.clear_password()
        self._notice = None
        self._rejected = None
        return True

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(self, redirect: Optional[str] = None) -> FlowResult:
        """Submit the entered credentials."""
        if self.is_locked:
            return self._fail(
                AuthErrorCode.ACCOUNT_LOCKED,
                self._guard.lock_detail(self._flow_key),
                MessageSurface.FORM,
            )
        if self.state == State.SUBMITTING:
            return FlowResult.failure(AuthErrorCode.ACTION_IN_FLIGHT)
        if self.state == State.REJECTED and self._rejected is not None:
            return self._rejected.model_copy(update={"issued": False})
        if self.state != State.ENTERING_PASSWORD:
            return self._fail(
                AuthErrorCode.VALIDATION_ERROR,
                EMAIL_REQUIRED_MESSAGE,
                MessageSurface.EMAIL_FIELD,
            )
        if not self._password:
            return self._fail(
                AuthErrorCode.VALIDATION_ERROR,
                PASSWORD_REQUIRED_MESSAGE,
                MessageSurface.FORM,
            )

        try:
            token = (
                self._captcha.consume()
                if self.captcha_required
                else self._captcha.consume_if_verified()
            )
        except MissingChallenge:
            if not self._captcha.visible:
                self._captcha.request_challenge(escalation=True)
            return self._fail(
                AuthErrorCode.MISSING_CHALLENGE,
                ERROR_MESSAGES[AuthErrorCode.CAPTCHA_REQUIRED],
                MessageSurface.CAPTCHA,
                captcha_required=True,
            )

        self._machine.transition(State.SUBMITTING)
        try:
            session = await self._backend.sign_in_with_credential(
                self._email, self._password, token,
            )
        except BackendRejection as rejection:
            return self._on_rejected(rejection)

        self._machine.transition(State.SUCCESS)
        self._guard.record_success(self._flow_key)
        self._captcha.reset()
        self.clear_password()
        self._notice = None
        self._logger.info(
            "Password sign-in succeeded.",
            extra={"flow_key": str(self._flow_key), "email": self._email},
        )
        return await self._bootstrap.finalize(session, redirect)

    def _on_rejected(self, rejection: BackendRejection) -> FlowResult:
        self._machine.transition(State.REJECTED)
        code = rejection.code
        self._logger.warning(
            "Password sign-in rejected (%s).",
            code,
            extra={"flow_key": str(self._flow_key), "error_code": str(code)},
        )

        if code in _CAPTCHA_CODES:
            # Not a failed attempt: the submission never reached the
            # credential check.
            self._guard.require_captcha(self._flow_key)
            self._captcha.request_challenge(escalation=True)
            self._machine.transition(State.ENTERING_PASSWORD)
            return self._fail(
                code,
                ERROR_MESSAGES[AuthErrorCode.CAPTCHA_REQUIRED]
                if code == AuthErrorCode.CAPTCHA_REQUIRED
                else rejection.message,
                MessageSurface.CAPTCHA,
                captcha_required=True,
                issued=True,
            )

        if code == AuthErrorCode.ACCOUNT_LOCKED:
            detail = rejection.detail or rejection.message
            self._guard.record_lockout(self._flow_key, detail)
            self._captcha.reset()
            self.clear_password()
            return self._fail(code, detail, MessageSurface.FORM, issued=True)

        if code in _COUNTED_CODES:
            crossed = self._guard.record_failure(self._flow_key)
            if crossed:
                self._captcha.request_challenge(
                    reason=CAPTCHA_NOW_REQUIRED_MESSAGE, escalation=True,
                )
            else:
                self._refresh_consumed_widget()
            result = self._fail(
                code,
                rejection.message,
                MessageSurface.FORM,
                captcha_required=self.captcha_required,
                issued=True,
            )
            if code == AuthErrorCode.INVALID_CREDENTIAL:
                # Keep the entered password for the next attempt.
                self._machine.transition(State.ENTERING_PASSWORD)
            else:
                self.clear_password()
                self._rejected = result
            return result

        # Transient: not counted, immediately retryable.
        self._refresh_consumed_widget()
        self._machine.transition(State.ENTERING_PASSWORD)
        return self._fail(
            code,
            rejection.message,
            MessageSurface.FORM,
            captcha_required=self.captcha_required,
            issued=True,
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _refresh_consumed_widget(self) -> None:
        if self.captcha_required and self._captcha.state == CaptchaState.ABSENT:
            self._captcha.request_challenge()

    def _fail(
        self,
        code: AuthErrorCode,
        message: Optional[str],
        surface: MessageSurface,
        **fields: object,
    ) -> FlowResult:
        result = FlowResult.failure(code, message, surface, **fields)
        self._notice = result.notice()
        return result
