"""
OTP Challenge Manager.

Requests and verifies one-time passcodes for one email address on behalf
of one flow key, and owns everything around that exchange:

- the resend cooldown (persisted as ``otp.<flowKey>.resendAvailableAt``
  so a reload cannot skip it, and ticked by a cancellable countdown);
- the backend-driven CAPTCHA escalation of the send route;
- the single message the challenge currently shows, bound to exactly
  one surface (the email field before a code was sent, the code field
  after);
- the in-flight slot that serialises send and verify for the challenge.

In password-reset mode the verification proof returned by a successful
verify is forwarded to ``proof_sink`` and never kept here.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from authflow.config import AppConfig
from authflow.database import DatabaseManager
from authflow.exceptions import ActionInFlight, BackendRejection, MissingChallenge
from authflow.logger import StructuredLogger
from authflow.models.auth_models import (
    ERROR_MESSAGES,
    AuthErrorCode,
    ErrorCategory,
    FlowNotice,
    FlowResult,
    OtpChallenge,
)
from authflow.models.enums import CaptchaState, FlowKey, MessageSurface, OtpPurpose
from authflow.services.auth_backend import AuthBackend
from authflow.services.base_service import BaseService
from authflow.services.captcha_challenge import CaptchaChallengeController
from authflow.services.countdown import Clock, CountdownTimer, seconds_until, utc_now
from authflow.services.scoped_store import ScopedStore
from authflow.services.state_machine import InFlightGuard
from authflow.utils.audit import AuditAction
from authflow.utils.general import normalize_email, validate_email

OTP_SENT_MESSAGE: str = "OTP sent successfully to your email"
EMAIL_VERIFIED_MESSAGE: str = "Email verified successfully!"
CODE_REQUIRED_MESSAGE: str = "Please enter the code sent to your email."
SEND_FIRST_MESSAGE: str = "Please request a code first."

_CAPTCHA_CODES: frozenset[AuthErrorCode] = frozenset({
    AuthErrorCode.CAPTCHA_REQUIRED,
    AuthErrorCode.CAPTCHA_FAILED,
})


def resend_key(flow_key: FlowKey) -> str:
    return f"otp.{flow_key}.resendAvailableAt"


def cooldown_message(remaining: int) -> str:
    return f"Please wait {remaining}s before requesting a new code."


class OtpChallengeManager(BaseService):
    """One OTP challenge for one flow key.

    Parameters
    ----------
    backend:
        Issues and verifies codes.
    store:
        Durable scoped store holding the resend deadline.
    flow_key:
        The flow this challenge belongs to.
    purpose:
        Selects the backend routes (sign-in or password reset).
    captcha:
        The CAPTCHA controller of this flow key.
    config:
        Supplies ``OTP_RESEND_COOLDOWN_S`` and ``COUNTDOWN_TICK_S``.
    logger:
        Structured logger instance.
    db:
        Optional database for persisted audit events.
    clock:
        Returns the current UTC time.
    proof_sink:
        Receives the verification proof in password-reset mode.
    """

    def __init__(
        self,
        backend: AuthBackend,
        store: ScopedStore,
        flow_key: FlowKey,
        purpose: OtpPurpose,
        captcha: CaptchaChallengeController,
        config: AppConfig,
        logger: StructuredLogger,
        db: Optional[DatabaseManager] = None,
        clock: Clock = utc_now,
        proof_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        super().__init__(logger, db)
        self._backend = backend
        self._store = store
        self._flow_key = flow_key
        self._purpose = purpose
        self._captcha = captcha
        self._clock = clock
        self._cooldown = timedelta(seconds=config.OTP_RESEND_COOLDOWN_S)
        self.proof_sink = proof_sink

        self._challenge: OtpChallenge = OtpChallenge()
        self._notice: Optional[FlowNotice] = None
        self._slot: InFlightGuard = InFlightGuard()
        self._displayed_remaining: int = 0
        self._timer = CountdownTimer(
            clock=clock,
            tick_s=config.COUNTDOWN_TICK_S,
            on_tick=self._on_tick,
            on_expire=self._on_cooldown_expired,
            logger=logger,
        )
        captcha.on_escalation_cleared = self._on_escalation_cleared
        self._restore_cooldown()

    # ------------------------------------------------------------------
    # View-facing state
    # ------------------------------------------------------------------

    @property
    def flow_key(self) -> FlowKey:
        return self._flow_key

    @property
    def challenge(self) -> OtpChallenge:
        return self._challenge.model_copy()

    @property
    def email(self) -> str:
        return self._challenge.email

    @property
    def sent(self) -> bool:
        return self._challenge.sent

    @property
    def verified(self) -> bool:
        return self._challenge.verified

    @property
    def captcha_required(self) -> bool:
        return self._challenge.captcha_required

    @property
    def captcha(self) -> CaptchaChallengeController:
        return self._captcha

    @property
    def notice(self) -> Optional[FlowNotice]:
        return self._notice

    @property
    def slot(self) -> InFlightGuard:
        """In-flight slot shared by every backend call on this challenge."""
        return self._slot

    @property
    def remaining_seconds(self) -> int:
        return seconds_until(self._challenge.resend_available_at, self._clock())

    @property
    def displayed_remaining(self) -> int:
        """Value of the last countdown tick."""
        return self._displayed_remaining

    @property
    def countdown_running(self) -> bool:
        return self._timer.is_running

    # ------------------------------------------------------------------
    # Email handling
    # ------------------------------------------------------------------

    def set_email(self, email: str) -> bool:
        """Update the address before a code was sent.

        A different address silently starts a new challenge.  Returns
        ``False`` (and changes nothing) once a code was sent; use
        :meth:`edit_email` then.
        """
        if self._challenge.sent:
            return False
        normalized = normalize_email(email)
        if normalized != self._challenge.email:
            self._challenge = OtpChallenge(
                email=normalized,
                resend_available_at=self._challenge.resend_available_at,
                captcha_required=self._challenge.captcha_required,
            )
            self._notice = None
        return True

    def edit_email(self, email: str) -> None:
        """Explicitly abandon the current challenge for a new address.

        Resets ``sent``, ``verified``, the cooldown and any message.

        Raises
        ------
        ActionInFlight
            If a send or verify is still awaiting the backend.
        """
        if self._slot.busy is not None:
            raise ActionInFlight("edit_email", self._slot.busy)
        self._timer.cancel()
        self._store.delete(resend_key(self._flow_key))
        self._challenge = OtpChallenge(
            email=normalize_email(email),
            captcha_required=self._challenge.captcha_required,
        )
        self._notice = None
        self._displayed_remaining = 0
        self._logger.info(
            "OTP challenge reset by email edit.",
            extra={"flow_key": str(self._flow_key)},
        )

    # ------------------------------------------------------------------
    # Send / resend
    # ------------------------------------------------------------------

    async def send_challenge(self) -> FlowResult:
        """Ask the backend to email a code to the current address.

        While the resend cooldown is running this is a no-op that issues
        no call and reports the remaining wait.
        """
        email = self._challenge.email
        was_sent = self._challenge.sent
        field = MessageSurface.CODE_FIELD if was_sent else MessageSurface.EMAIL_FIELD

        check = validate_email(email)
        if not check.is_valid:
            return self._fail(
                AuthErrorCode.VALIDATION_ERROR,
                check.error_message,
                MessageSurface.EMAIL_FIELD,
            )

        remaining = self.remaining_seconds
        if remaining > 0:
            return self._fail(
                AuthErrorCode.RATE_LIMITED,
                cooldown_message(remaining),
                field,
                remaining_seconds=remaining,
            )

        try:
            with self._slot.hold("send"):
                token = self.take_captcha_token()
                await self._backend.send_otp(email, self._purpose, token)
        except ActionInFlight:
            return FlowResult.failure(AuthErrorCode.ACTION_IN_FLIGHT, surface=field)
        except MissingChallenge:
            if not self._captcha.visible:
                self._captcha.request_challenge()
            return self._fail(
                AuthErrorCode.MISSING_CHALLENGE,
                None,
                MessageSurface.CAPTCHA,
                captcha_required=True,
            )
        except BackendRejection as rejection:
            self._challenge.attempts += 1
            return self._on_send_rejected(rejection, field)

        self._challenge.attempts += 1
        self._challenge.sent = True
        self._challenge.captcha_required = False
        deadline = self._clock() + self._cooldown
        self._start_cooldown(deadline)
        self._captcha.reset()
        self._notice = FlowNotice(message=OTP_SENT_MESSAGE, surface=MessageSurface.CODE_FIELD)
        self._audit(
            AuditAction.OTP_SENT,
            self._flow_key,
            email,
            {"attempts": self._challenge.attempts, "resend": was_sent},
        )
        return FlowResult(
            success=True,
            issued=True,
            message=OTP_SENT_MESSAGE,
            surface=MessageSurface.CODE_FIELD,
            remaining_seconds=self.remaining_seconds,
        )

    async def resend(self) -> FlowResult:
        """Request another code; gated by the cooldown like the first send."""
        return await self.send_challenge()

    def take_captcha_token(self) -> Optional[str]:
        """Token to attach to the next call on this challenge.

        Raises
        ------
        MissingChallenge
            If CAPTCHA is required and no verified token is held.
        """
        if self._challenge.captcha_required:
            return self._captcha.consume()
        return self._captcha.consume_if_verified()

    def _on_send_rejected(self, rejection: BackendRejection, field: MessageSurface) -> FlowResult:
        self._logger.warning(
            "OTP send rejected (%s).",
            rejection.code,
            extra={"flow_key": str(self._flow_key), "error_code": str(rejection.code)},
        )
        code = rejection.code
        if code in _CAPTCHA_CODES or rejection.requires_captcha:
            self._challenge.captcha_required = True
            self._captcha.request_challenge(escalation=True)
            return self._fail(code, rejection.message, field, captcha_required=True, issued=True)

        if code == AuthErrorCode.RATE_LIMITED:
            # The backend's lockout supersedes CAPTCHA for now.
            self._challenge.captcha_required = False
            self._captcha.reset()
            return self._fail(code, rejection.message, field, issued=True)

        self._refresh_consumed_widget()
        surface = (
            MessageSurface.FORM
            if code == AuthErrorCode.ACCOUNT_SUSPENDED
            else field
        )
        return self._fail(
            code,
            rejection.message,
            surface,
            captcha_required=self._challenge.captcha_required,
            issued=True,
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify(self, code: str) -> FlowResult:
        """Check *code* for the current address.

        On success ``verified`` becomes true.  In reset mode the proof
        goes to ``proof_sink``.
        """
        precheck = self.check_code_entry(code)
        if precheck is not None:
            return precheck

        try:
            with self._slot.hold("verify"):
                response = await self._backend.verify_otp(
                    self._challenge.email, code.strip(), self._purpose,
                )
        except ActionInFlight:
            return FlowResult.failure(
                AuthErrorCode.ACTION_IN_FLIGHT, surface=MessageSurface.CODE_FIELD,
            )
        except BackendRejection as rejection:
            return self.handle_code_rejection(rejection)

        if self._purpose == OtpPurpose.PASSWORD_RESET:
            if not response.verification_proof:
                return self._fail(
                    AuthErrorCode.WRONG_CODE, None, MessageSurface.CODE_FIELD, issued=True,
                )
            if self.proof_sink is not None:
                self.proof_sink(response.verification_proof)

        self.mark_verified()
        return FlowResult(
            success=True,
            issued=True,
            message=EMAIL_VERIFIED_MESSAGE,
            surface=MessageSurface.CODE_FIELD,
        )

    def check_code_entry(self, code: str) -> Optional[FlowResult]:
        """Local checks before a code is sent anywhere; ``None`` if fine."""
        if self._slot.busy is not None:
            return FlowResult.failure(
                AuthErrorCode.ACTION_IN_FLIGHT, surface=MessageSurface.CODE_FIELD,
            )
        if not self._challenge.sent:
            return self._fail(
                AuthErrorCode.VALIDATION_ERROR, SEND_FIRST_MESSAGE, MessageSurface.EMAIL_FIELD,
            )
        if not code or not code.strip():
            return self._fail(
                AuthErrorCode.VALIDATION_ERROR, CODE_REQUIRED_MESSAGE, MessageSurface.CODE_FIELD,
            )
        return None

    def mark_verified(self) -> None:
        """Record a successful verification of the current code."""
        self._challenge.verified = True
        self._timer.cancel()
        self._store.delete(resend_key(self._flow_key))
        self._challenge.resend_available_at = None
        self._captcha.reset()
        self._notice = FlowNotice(
            message=EMAIL_VERIFIED_MESSAGE, surface=MessageSurface.CODE_FIELD,
        )
        self._audit(AuditAction.IDENTITY_VERIFIED, self._flow_key, self._challenge.email)

    def handle_code_rejection(self, rejection: BackendRejection) -> FlowResult:
        """Translate a rejected code submission into a result.

        A wrong code is a validation message on the code field; when the
        backend also declares CAPTCHA required, the widget is raised for
        the next attempt.
        """
        self._logger.warning(
            "Code rejected (%s).",
            rejection.code,
            extra={"flow_key": str(self._flow_key), "error_code": str(rejection.code)},
        )
        if rejection.requires_captcha or rejection.code in _CAPTCHA_CODES:
            self._challenge.captcha_required = True
            self._captcha.request_challenge(escalation=True)
        elif rejection.code == AuthErrorCode.RATE_LIMITED:
            self._challenge.captcha_required = False
            self._captcha.reset()
        else:
            self._refresh_consumed_widget()

        surface = (
            MessageSurface.FORM
            if rejection.code in (AuthErrorCode.ACCOUNT_SUSPENDED, AuthErrorCode.ACCOUNT_LOCKED)
            else MessageSurface.CODE_FIELD
        )
        return self._fail(
            rejection.code,
            rejection.message,
            surface,
            captcha_required=self._challenge.captcha_required,
            issued=True,
        )

    # ------------------------------------------------------------------
    # Cooldown
    # ------------------------------------------------------------------

    def resume_countdown(self) -> None:
        """Restart ticking towards a restored deadline (call from the loop)."""
        deadline = self._challenge.resend_available_at
        if deadline is not None and seconds_until(deadline, self._clock()) > 0:
            self._timer.start(deadline)

    def teardown(self) -> None:
        """Stop the countdown and any pending widget hide."""
        self._timer.cancel()
        self._captcha.teardown()

    def _start_cooldown(self, deadline: datetime) -> None:
        self._challenge.resend_available_at = deadline
        self._store.set(resend_key(self._flow_key), deadline.isoformat())
        self._displayed_remaining = seconds_until(deadline, self._clock())
        self._timer.start(deadline)

    def _restore_cooldown(self) -> None:
        raw = self._store.get(resend_key(self._flow_key))
        if raw is None:
            return
        try:
            deadline = datetime.fromisoformat(raw)
        except ValueError:
            self._logger.warning(
                "Discarding malformed resend deadline.",
                extra={"flow_key": str(self._flow_key)},
            )
            self._store.delete(resend_key(self._flow_key))
            return
        if seconds_until(deadline, self._clock()) > 0:
            self._challenge.resend_available_at = deadline
            self._displayed_remaining = seconds_until(deadline, self._clock())
        else:
            self._store.delete(resend_key(self._flow_key))

    def _on_tick(self, remaining: int) -> None:
        self._displayed_remaining = remaining

    def _on_cooldown_expired(self) -> None:
        self._displayed_remaining = 0
        self._challenge.resend_available_at = None
        self._store.delete(resend_key(self._flow_key))
        self._logger.debug(
            "Resend available.", extra={"flow_key": str(self._flow_key)},
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _on_escalation_cleared(self) -> None:
        self._challenge.captcha_required = False
        if self._notice is not None and self._notice.category == ErrorCategory.SECURITY_ESCALATION:
            self._notice = None

    def _refresh_consumed_widget(self) -> None:
        # A token spent on a rejected call cannot be reused.
        if self._challenge.captcha_required and self._captcha.state == CaptchaState.ABSENT:
            self._captcha.request_challenge()

    def _fail(
        self,
        code: AuthErrorCode,
        message: Optional[str],
        surface: MessageSurface,
        **fields: object,
    ) -> FlowResult:
        result = FlowResult.failure(code, message or ERROR_MESSAGES[code], surface, **fields)
        self._notice = result.notice()
        return result
