"""
OTP Sign-In Flow.

Passwordless sign-in on flow key ``sign-in-otp``:

    awaiting_send -> awaiting_code -> submitting -> success
          ^               ^                     \
          +- edit email --+------------------- rejected

The code is requested and resent through an ``OtpChallengeManager``
(which owns the cooldown and the send-route CAPTCHA); the final
submission goes to the OTP sign-in route on the same in-flight slot, so
a send, a verify and a submit can never overlap.
"""

from __future__ import annotations

from typing import Optional

from authflow.database import DatabaseManager
from authflow.exceptions import ActionInFlight, BackendRejection, MissingChallenge
from authflow.logger import StructuredLogger
from authflow.models.auth_models import AuthErrorCode, FlowNotice, FlowResult
from authflow.models.enums import MessageSurface, OtpSignInState
from authflow.services.attempt_guard import AttemptGuard
from authflow.services.auth_backend import AuthBackend
from authflow.services.base_service import BaseService
from authflow.services.otp_challenge import OtpChallengeManager
from authflow.services.session_bootstrap import SessionBootstrap
from authflow.services.state_machine import FlowStateMachine

State = OtpSignInState

_TRANSITIONS: dict[State, frozenset[State]] = {
    State.AWAITING_SEND: frozenset({State.AWAITING_CODE}),
    State.AWAITING_CODE: frozenset({State.AWAITING_SEND, State.SUBMITTING}),
    State.SUBMITTING: frozenset({State.SUCCESS, State.REJECTED}),
    State.REJECTED: frozenset({State.AWAITING_CODE, State.AWAITING_SEND}),
}

_TERMINAL_CODES: frozenset[AuthErrorCode] = frozenset({
    AuthErrorCode.ACCOUNT_LOCKED,
    AuthErrorCode.ACCOUNT_SUSPENDED,
})


class OtpSignInFlow(BaseService):
    """Sign-in with an emailed one-time code.

    Parameters
    ----------
    backend:
        Signs in with the code.
    manager:
        Challenge manager bound to ``sign-in-otp``.
    guard:
        Shared lockout holder.
    bootstrap:
        Finalises a successful sign-in into a session.
    logger:
        Structured logger instance.
    db:
        Optional database for persisted audit events.
    """

    def __init__(
        self,
        backend: AuthBackend,
        manager: OtpChallengeManager,
        guard: AttemptGuard,
        bootstrap: SessionBootstrap,
        logger: StructuredLogger,
        db: Optional[DatabaseManager] = None,
    ) -> None:
        super().__init__(logger, db)
        self._backend = backend
        self._manager = manager
        self._guard = guard
        self._bootstrap = bootstrap
        self._flow_key = manager.flow_key
        initial = State.AWAITING_CODE if manager.sent else State.AWAITING_SEND
        self._machine: FlowStateMachine[State] = FlowStateMachine(
            str(self._flow_key), initial, _TRANSITIONS, logger,
        )

    @property
    def state(self) -> State:
        return self._machine.state

    @property
    def manager(self) -> OtpChallengeManager:
        return self._manager

    @property
    def email(self) -> str:
        return self._manager.email

    @property
    def notice(self) -> Optional[FlowNotice]:
        return self._manager.notice

    @property
    def is_locked(self) -> bool:
        return self._guard.is_locked(self._flow_key)

    def mount(self) -> None:
        self._manager.resume_countdown()
        captcha = self._manager.captcha
        if self._manager.captcha_required and not captcha.visible:
            captcha.request_challenge(escalation=True)

    def teardown(self) -> None:
        self._manager.teardown()

    def set_email(self, email: str) -> bool:
        return self._manager.set_email(email)

    def edit_email(self, email: str) -> FlowResult:
        """Abandon the sent code and start over with *email*."""
        if self.is_locked or self.state == State.SUCCESS:
            return FlowResult.failure(AuthErrorCode.VALIDATION_ERROR, surface=MessageSurface.FORM)
        try:
            self._manager.edit_email(email)
        except ActionInFlight:
            return FlowResult.failure(
                AuthErrorCode.ACTION_IN_FLIGHT, surface=MessageSurface.EMAIL_FIELD,
            )
        if self._machine.can(State.AWAITING_SEND):
            self._machine.transition(State.AWAITING_SEND)
        return FlowResult(success=True)

    async def send_code(self) -> FlowResult:
        """Request (or re-request) a code for the current address."""
        if self.is_locked:
            return self._locked_result()
        if self.state not in (State.AWAITING_SEND, State.AWAITING_CODE):
            return FlowResult.failure(AuthErrorCode.ACTION_IN_FLIGHT)
        result = await self._manager.send_challenge()
        if result.success and self.state == State.AWAITING_SEND:
            self._machine.transition(State.AWAITING_CODE)
        return result

    async def resend(self) -> FlowResult:
        return await self.send_code()

    async def submit(self, code: str, redirect: Optional[str] = None) -> FlowResult:
        """Sign in with *code*."""
        if self.is_locked:
            return self._locked_result()
        if self.state == State.SUBMITTING:
            return FlowResult.failure(
                AuthErrorCode.ACTION_IN_FLIGHT, surface=MessageSurface.CODE_FIELD,
            )
        precheck = self._manager.check_code_entry(code)
        if precheck is not None:
            return precheck
        if self.state != State.AWAITING_CODE:
            return FlowResult.failure(AuthErrorCode.VALIDATION_ERROR)

        try:
            with self._manager.slot.hold("submit"):
                token = self._manager.take_captcha_token()
                self._machine.transition(State.SUBMITTING)
                session = await self._backend.sign_in_with_otp(
                    self._manager.email, code.strip(), token,
                )
        except ActionInFlight:
            return FlowResult.failure(
                AuthErrorCode.ACTION_IN_FLIGHT, surface=MessageSurface.CODE_FIELD,
            )
        except MissingChallenge:
            captcha = self._manager.captcha
            if not captcha.visible:
                captcha.request_challenge()
            return FlowResult.failure(
                AuthErrorCode.MISSING_CHALLENGE,
                surface=MessageSurface.CAPTCHA,
                captcha_required=True,
            )
        except BackendRejection as rejection:
            return self._on_rejected(rejection)

        self._machine.transition(State.SUCCESS)
        self._manager.mark_verified()
        self._guard.record_success(self._flow_key)
        self._logger.info(
            "OTP sign-in succeeded.",
            extra={"flow_key": str(self._flow_key), "email": self._manager.email},
        )
        return await self._bootstrap.finalize(session, redirect)

    def _on_rejected(self, rejection: BackendRejection) -> FlowResult:
        self._machine.transition(State.REJECTED)
        if rejection.code == AuthErrorCode.ACCOUNT_LOCKED:
            self._guard.record_lockout(
                self._flow_key, rejection.detail or rejection.message,
            )
        result = self._manager.handle_code_rejection(rejection)
        if rejection.code not in _TERMINAL_CODES:
            self._machine.transition(State.AWAITING_CODE)
        return result

    def _locked_result(self) -> FlowResult:
        return FlowResult.failure(
            AuthErrorCode.ACCOUNT_LOCKED,
            self._guard.lock_detail(self._flow_key),
        )
