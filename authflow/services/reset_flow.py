"""
Resumable Credential-Reset Flow.

Two steps, addressable by URL (``?step=1|2&email=...``):

1. ``verifying_identity``: request a code for the email
   (``reset-verify`` challenge) and verify it.  A successful verify
   yields the verification proof.
2. ``resetting_credential``: submit the new credential with the proof
   (``reset-submit`` attempts, lockout and CAPTCHA).

Step 2 is only reachable with a proof held in this flow instance.  A
step-2 URL without one (a copied link, a reload in a new window, or a
return after the user walked away from step 2) renders ``not_found``;
it never silently falls back to step 1.
"""

from __future__ import annotations

from typing import Optional

from pydantic import ValidationError

from authflow.config import AppConfig
from authflow.database import DatabaseManager
from authflow.exceptions import ActionInFlight, BackendRejection, MissingChallenge
from authflow.logger import StructuredLogger
from authflow.models.auth_models import (
    CAPTCHA_NOW_REQUIRED_MESSAGE,
    ERROR_MESSAGES,
    AuthErrorCode,
    FlowNotice,
    FlowResult,
    ResetFlowState,
)
from authflow.models.enums import (
    CaptchaState,
    FlowKey,
    MessageSurface,
    ResetPhase,
    ResetState,
)
from authflow.models.locations import ResetLocation
from authflow.services.attempt_guard import AttemptGuard
from authflow.services.auth_backend import AuthBackend
from authflow.services.base_service import BaseService
from authflow.services.captcha_challenge import CaptchaChallengeController
from authflow.services.otp_challenge import OtpChallengeManager
from authflow.services.scoped_store import ScopedStore
from authflow.services.session_bootstrap import SessionBootstrap
from authflow.services.state_machine import FlowStateMachine, InFlightGuard
from authflow.utils.audit import AuditAction
from authflow.utils.general import validate_new_password, validate_password_confirmation

State = ResetState

ABANDONED_KEY: str = "reset.abandoned"

RESET_SUCCESS_MESSAGE: str = "Password reset successful. You can now log in."
VERIFY_FIRST_MESSAGE: str = "Please verify your email with OTP before proceeding."

_TRANSITIONS: dict[State, frozenset[State]] = {
    State.VERIFYING_IDENTITY: frozenset({State.RESETTING_CREDENTIAL}),
    State.RESETTING_CREDENTIAL: frozenset({State.SUCCESS, State.FAILED}),
}

_CAPTCHA_CODES: frozenset[AuthErrorCode] = frozenset({
    AuthErrorCode.CAPTCHA_REQUIRED,
    AuthErrorCode.CAPTCHA_FAILED,
})


class ResumableResetFlow(BaseService):
    """Forgot-password flow.

    Parameters
    ----------
    backend:
        Performs the reset.
    store:
        Durable scoped store holding the abandonment marker.
    manager:
        Challenge manager bound to ``reset-verify`` in password-reset mode.
        Its ``proof_sink`` is taken over by this flow.
    guard:
        Shared failure counter / lockout holder.
    captcha:
        CAPTCHA controller for ``reset-submit``.
    bootstrap:
        Finalises the session when the backend signs the user in
        directly after a reset.
    config:
        Supplies ``RESET_PATH`` and ``SIGN_IN_PATH``.
    logger:
        Structured logger instance.
    db:
        Optional database for persisted audit events.
    """

    def __init__(
        self,
        backend: AuthBackend,
        store: ScopedStore,
        manager: OtpChallengeManager,
        guard: AttemptGuard,
        captcha: CaptchaChallengeController,
        bootstrap: SessionBootstrap,
        config: AppConfig,
        logger: StructuredLogger,
        db: Optional[DatabaseManager] = None,
    ) -> None:
        super().__init__(logger, db)
        self._backend = backend
        self._store = store
        self._manager = manager
        self._guard = guard
        self._captcha = captcha
        self._bootstrap = bootstrap
        self._reset_path: str = config.RESET_PATH
        self._sign_in_path: str = config.SIGN_IN_PATH
        self._flow_key = FlowKey.RESET_SUBMIT
        self._slot = InFlightGuard()
        self._proof: Optional[str] = None
        self._reset_state = ResetFlowState()
        self._notice: Optional[FlowNotice] = None
        self._machine: FlowStateMachine[State] = self._new_machine(State.VERIFYING_IDENTITY)
        manager.proof_sink = self._accept_proof

    # ------------------------------------------------------------------
    # View-facing state
    # ------------------------------------------------------------------

    @property
    def state(self) -> State:
        return self._machine.state

    @property
    def phase(self) -> ResetPhase:
        return self._reset_state.phase

    @property
    def manager(self) -> OtpChallengeManager:
        return self._manager

    @property
    def captcha(self) -> CaptchaChallengeController:
        return self._captcha

    @property
    def has_proof(self) -> bool:
        return self._proof is not None

    @property
    def abandoned(self) -> bool:
        """Step 2 was left (or found left) without completing the reset."""
        return self._reset_state.abandoned

    @property
    def notice(self) -> Optional[FlowNotice]:
        if self.state == State.VERIFYING_IDENTITY:
            return self._manager.notice
        return self._notice

    @property
    def location(self) -> ResetLocation:
        return ResetLocation(phase=self.phase, email=self._manager.email)

    @property
    def location_url(self) -> str:
        return self.location.to_url(self._reset_path)

    @property
    def captcha_required(self) -> bool:
        return self._guard.is_captcha_required(self._flow_key)

    # ------------------------------------------------------------------
    # Entry / exit
    # ------------------------------------------------------------------

    def load(self, url: str) -> State:
        """Enter the flow from *url* (initial navigation or reload)."""
        location = ResetLocation.parse(url)
        abandoned = self._store.get(ABANDONED_KEY) == "true"
        if abandoned:
            self._store.delete(ABANDONED_KEY)
            self._proof = None
            self._logger.info(
                "Reset flow was abandoned at step 2; proof discarded.",
                extra={"flow_key": str(self._flow_key)},
            )

        if location.phase == ResetPhase.RESETTING:
            try:
                self._reset_state = ResetFlowState(
                    phase=ResetPhase.RESETTING,
                    verification_proof=self._proof,
                )
            except ValidationError:
                self._logger.warning(
                    "Step 2 requested without a verification proof.",
                    extra={"flow_key": str(self._flow_key)},
                )
                self._reset_state = ResetFlowState(abandoned=abandoned)
                self._machine = self._new_machine(State.NOT_FOUND)
                return self.state
            self._machine = self._new_machine(State.RESETTING_CREDENTIAL)
            self._show_escalated_widget()
            return self.state

        self._reset_state = ResetFlowState(
            verification_proof=self._proof, abandoned=abandoned,
        )
        self._machine = self._new_machine(State.VERIFYING_IDENTITY)
        if location.email:
            self._manager.set_email(location.email)
        self._manager.resume_countdown()
        return self.state

    def leave(self) -> None:
        """The user navigated away from the reset page."""
        if self.state == State.RESETTING_CREDENTIAL:
            self._store.set(ABANDONED_KEY, "true")
            self._proof = None
            self._reset_state = ResetFlowState(abandoned=True)
            self._audit(AuditAction.RESET_ABANDONED, self._flow_key, self._manager.email)
        self.teardown()

    def teardown(self) -> None:
        self._manager.teardown()
        self._captcha.teardown()

    # ------------------------------------------------------------------
    # Step 1
    # ------------------------------------------------------------------

    def set_email(self, email: str) -> bool:
        if self.state != State.VERIFYING_IDENTITY:
            return False
        return self._manager.set_email(email)

    def edit_email(self, email: str) -> FlowResult:
        """Start over with a different address; any proof is dropped."""
        if self.state != State.VERIFYING_IDENTITY:
            return FlowResult.failure(AuthErrorCode.VALIDATION_ERROR)
        try:
            self._manager.edit_email(email)
        except ActionInFlight:
            return FlowResult.failure(
                AuthErrorCode.ACTION_IN_FLIGHT, surface=MessageSurface.EMAIL_FIELD,
            )
        self._proof = None
        self._reset_state = ResetFlowState()
        return FlowResult(success=True)

    async def send_code(self) -> FlowResult:
        if self.state != State.VERIFYING_IDENTITY:
            return self._not_here()
        return await self._manager.send_challenge()

    async def resend_code(self) -> FlowResult:
        if self.state != State.VERIFYING_IDENTITY:
            return self._not_here()
        return await self._manager.resend()

    async def verify_code(self, code: str) -> FlowResult:
        if self.state != State.VERIFYING_IDENTITY:
            return self._not_here()
        return await self._manager.verify(code)

    def proceed(self) -> FlowResult:
        """Move to step 2.  Requires a verified code in this instance."""
        if self.state != State.VERIFYING_IDENTITY:
            return self._not_here()
        if self._proof is None or not self._manager.verified:
            return FlowResult.failure(
                AuthErrorCode.VALIDATION_ERROR,
                VERIFY_FIRST_MESSAGE,
                MessageSurface.FORM,
            )
        self._reset_state = ResetFlowState(
            phase=ResetPhase.RESETTING, verification_proof=self._proof,
        )
        self._machine.transition(State.RESETTING_CREDENTIAL)
        self._notice = None
        self._show_escalated_widget()
        return FlowResult(success=True, route=self.location_url)

    # ------------------------------------------------------------------
    # Step 2
    # ------------------------------------------------------------------

    async def submit_new_credential(self, new_password: str, confirmation: str) -> FlowResult:
        """Replace the credential using the held proof."""
        if self._guard.is_locked(self._flow_key):
            return self._fail(
                AuthErrorCode.FLOW_LOCKED,
                self._guard.lock_detail(self._flow_key),
                MessageSurface.FORM,
            )
        if self.state != State.RESETTING_CREDENTIAL or self._proof is None:
            return self._not_here()

        for check in (
            validate_password_confirmation(new_password, confirmation),
            validate_new_password(new_password),
        ):
            if not check.is_valid:
                return self._fail(
                    AuthErrorCode.VALIDATION_ERROR, check.error_message, MessageSurface.FORM,
                )

        try:
            with self._slot.hold("reset"):
                token = (
                    self._captcha.consume()
                    if self.captcha_required
                    else self._captcha.consume_if_verified()
                )
                session = await self._backend.reset_credential(
                    self._proof, new_password, token,
                )
        except ActionInFlight:
            return FlowResult.failure(AuthErrorCode.ACTION_IN_FLIGHT)
        except MissingChallenge:
            if not self._captcha.visible:
                self._captcha.request_challenge(escalation=True)
            return self._fail(
                AuthErrorCode.MISSING_CHALLENGE,
                None,
                MessageSurface.CAPTCHA,
                captcha_required=True,
            )
        except BackendRejection as rejection:
            return self._on_rejected(rejection)

        self._machine.transition(State.SUCCESS)
        self._guard.record_success(self._flow_key)
        self._captcha.reset()
        self._proof = None
        self._reset_state = ResetFlowState()
        self._store.delete(ABANDONED_KEY)
        self._audit(AuditAction.RESET_COMPLETED, self._flow_key, self._manager.email)
        if session is not None:
            return await self._bootstrap.finalize(session)
        self._notice = FlowNotice(message=RESET_SUCCESS_MESSAGE)
        return FlowResult(
            success=True,
            issued=True,
            message=RESET_SUCCESS_MESSAGE,
            route=self._sign_in_path,
        )

    def _on_rejected(self, rejection: BackendRejection) -> FlowResult:
        code = rejection.code
        self._logger.warning(
            "Credential reset rejected (%s).",
            code,
            extra={"flow_key": str(self._flow_key), "error_code": str(code)},
        )

        if code in _CAPTCHA_CODES or rejection.requires_captcha:
            self._guard.require_captcha(self._flow_key)
            self._captcha.request_challenge(escalation=True)
            return self._fail(
                code,
                ERROR_MESSAGES[AuthErrorCode.CAPTCHA_REQUIRED]
                if code == AuthErrorCode.CAPTCHA_REQUIRED
                else rejection.message,
                MessageSurface.CAPTCHA,
                captcha_required=True,
                issued=True,
            )

        if code == AuthErrorCode.FLOW_LOCKED:
            detail = rejection.detail or rejection.message
            self._guard.record_lockout(self._flow_key, detail)
            self._captcha.reset()
            self._proof = None
            self._machine.transition(State.FAILED)
            return self._fail(code, detail, MessageSurface.FORM, issued=True)

        if code == AuthErrorCode.VALIDATION_ERROR:
            if self._guard.record_failure(self._flow_key):
                self._captcha.request_challenge(
                    reason=CAPTCHA_NOW_REQUIRED_MESSAGE, escalation=True,
                )
            else:
                self._refresh_consumed_widget()
        else:
            self._refresh_consumed_widget()
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

    def _accept_proof(self, proof: str) -> None:
        self._proof = proof
        self._reset_state = ResetFlowState(verification_proof=proof)

    def _new_machine(self, initial: State) -> FlowStateMachine[State]:
        return FlowStateMachine(str(self._flow_key), initial, _TRANSITIONS, self._logger)

    def _show_escalated_widget(self) -> None:
        if self.captcha_required and not self._captcha.visible:
            self._captcha.request_challenge(escalation=True)

    def _refresh_consumed_widget(self) -> None:
        if self.captcha_required and self._captcha.state == CaptchaState.ABSENT:
            self._captcha.request_challenge()

    def _not_here(self) -> FlowResult:
        if self.state == State.NOT_FOUND:
            return FlowResult.failure(AuthErrorCode.NOT_FOUND)
        if self.state == State.FAILED:
            return FlowResult.failure(
                AuthErrorCode.FLOW_LOCKED, self._guard.lock_detail(self._flow_key),
            )
        if self.state == State.VERIFYING_IDENTITY:
            return FlowResult.failure(AuthErrorCode.VALIDATION_ERROR, VERIFY_FIRST_MESSAGE)
        return FlowResult.failure(AuthErrorCode.VALIDATION_ERROR)

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
