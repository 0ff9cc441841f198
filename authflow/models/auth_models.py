"""
Authentication Flow Models.

Pydantic models and enumerations for the contracts between the flow
controllers, the backend adapter, and the view layer.

Every flow operation returns a structured, inspectable ``FlowResult``
rather than raw strings or exception side-channels; the view layer
never sees a transport exception.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from authflow.models.enums import (
    CaptchaState,
    FlowKey,
    MessageSurface,
    ResetPhase,
)


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

class AuthErrorCode(StrEnum):
    """Exhaustive enumeration of flow failure reasons."""

    RATE_LIMITED = "rate_limited"
    CAPTCHA_REQUIRED = "captcha_required"
    CAPTCHA_FAILED = "captcha_failed"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_LOCKED = "account_locked"
    FLOW_LOCKED = "flow_locked"
    INVALID_CREDENTIAL = "invalid_credential"
    WRONG_CODE = "wrong_code"
    MISSING_CHALLENGE = "missing_challenge"
    VALIDATION_ERROR = "validation_error"
    NETWORK_ERROR = "network_error"
    ACTION_IN_FLIGHT = "action_in_flight"
    NOT_FOUND = "not_found"
    UNKNOWN_ERROR = "unknown_error"


class ErrorCategory(StrEnum):
    """How a failure affects the flow.

    - ``TRANSIENT``: retryable after a wait, no state corruption.
    - ``SECURITY_ESCALATION``: changes the next required input (CAPTCHA).
    - ``TERMINAL``: the flow becomes inert; never auto-retried.
    - ``VALIDATION``: local, immediately retryable.
    """

    TRANSIENT = "transient"
    SECURITY_ESCALATION = "security_escalation"
    TERMINAL = "terminal"
    VALIDATION = "validation"


ERROR_CATEGORIES: dict[AuthErrorCode, ErrorCategory] = {
    AuthErrorCode.RATE_LIMITED: ErrorCategory.TRANSIENT,
    AuthErrorCode.NETWORK_ERROR: ErrorCategory.TRANSIENT,
    AuthErrorCode.UNKNOWN_ERROR: ErrorCategory.TRANSIENT,
    AuthErrorCode.ACTION_IN_FLIGHT: ErrorCategory.TRANSIENT,
    AuthErrorCode.CAPTCHA_REQUIRED: ErrorCategory.SECURITY_ESCALATION,
    AuthErrorCode.CAPTCHA_FAILED: ErrorCategory.SECURITY_ESCALATION,
    AuthErrorCode.MISSING_CHALLENGE: ErrorCategory.SECURITY_ESCALATION,
    AuthErrorCode.ACCOUNT_SUSPENDED: ErrorCategory.TERMINAL,
    AuthErrorCode.ACCOUNT_LOCKED: ErrorCategory.TERMINAL,
    AuthErrorCode.FLOW_LOCKED: ErrorCategory.TERMINAL,
    AuthErrorCode.NOT_FOUND: ErrorCategory.TERMINAL,
    AuthErrorCode.INVALID_CREDENTIAL: ErrorCategory.VALIDATION,
    AuthErrorCode.WRONG_CODE: ErrorCategory.VALIDATION,
    AuthErrorCode.VALIDATION_ERROR: ErrorCategory.VALIDATION,
}


# ---------------------------------------------------------------------------
# Default human-readable messages
# ---------------------------------------------------------------------------

ERROR_MESSAGES: dict[AuthErrorCode, str] = {
    AuthErrorCode.RATE_LIMITED: "Too many requests. Please try again in 15 minutes.",
    AuthErrorCode.CAPTCHA_REQUIRED: (
        "reCAPTCHA verification is required due to multiple failed "
        "attempts or requests"
    ),
    AuthErrorCode.CAPTCHA_FAILED: "reCAPTCHA verification failed. Please try again.",
    AuthErrorCode.ACCOUNT_SUSPENDED: (
        "This account is temporarily suspended. Please reach out to "
        "support for help."
    ),
    AuthErrorCode.ACCOUNT_LOCKED: (
        "Account is temporarily locked due to too many failed attempts. "
        "Try again later."
    ),
    AuthErrorCode.FLOW_LOCKED: (
        "Multiple failed reset attempts. Please contact support."
    ),
    AuthErrorCode.INVALID_CREDENTIAL: "Incorrect email or password.",
    AuthErrorCode.WRONG_CODE: "Invalid or expired OTP.",
    AuthErrorCode.MISSING_CHALLENGE: (
        "reCAPTCHA verification is required. Please complete the verification."
    ),
    AuthErrorCode.VALIDATION_ERROR: "Please check the highlighted field.",
    AuthErrorCode.NETWORK_ERROR: "Cannot reach the server. Check your internet connection.",
    AuthErrorCode.ACTION_IN_FLIGHT: "Please wait for the current request to finish.",
    AuthErrorCode.NOT_FOUND: "Page not found.",
    AuthErrorCode.UNKNOWN_ERROR: "Something went wrong. Please try again.",
}

CAPTCHA_NOW_REQUIRED_MESSAGE: str = (
    "reCAPTCHA verification is now required due to multiple failed attempts."
)


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------

class ValidationResult(BaseModel):
    """Result of a single client-side field validation check.

    Attributes
    ----------
    is_valid:
        ``True`` when the value passes the validation rule.
    error_message:
        Human-readable description of the failure, or ``None`` on success.
    """

    is_valid: bool
    error_message: Optional[str] = None

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# Backend responses
# ---------------------------------------------------------------------------

class SessionResult(BaseModel):
    """Produced by any completed sign-in; owned thereafter by
    ``SessionBootstrap``.

    Tokens are excluded from ``repr`` so that a logged model never
    carries them.
    """

    bearer_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    role: str
    is_new_account: Optional[bool] = None
    user_id: Optional[str] = None
    email: Optional[str] = None

    model_config = {"from_attributes": True}


class VerificationResponse(BaseModel):
    """Result of a successful OTP verify call.

    ``verification_proof`` is only issued for the password-reset purpose.
    """

    verified: bool = True
    verification_proof: Optional[str] = Field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Controller data model
# ---------------------------------------------------------------------------

class ChallengeHandle(BaseModel):
    """Rendering identity of a CAPTCHA widget.

    A new ``instance_id`` tells the view to discard the old widget and
    mount a fresh one.
    """

    flow_key: FlowKey
    instance_id: int


class CaptchaToken(BaseModel):
    value: Optional[str] = Field(default=None, repr=False)
    state: CaptchaState = CaptchaState.ABSENT


class AttemptCounter(BaseModel):
    """Persisted failure count for one flow key."""

    flow_key: FlowKey
    count: int = Field(default=0, ge=0)
    threshold: int = Field(default=3, ge=1)

    @property
    def captcha_required(self) -> bool:
        return self.count >= self.threshold


class OtpChallenge(BaseModel):
    """State of one OTP challenge for one email address."""

    email: str = ""
    sent: bool = False
    verified: bool = False
    resend_available_at: Optional[datetime] = None
    captcha_required: bool = False
    attempts: int = Field(default=0, ge=0)


class ResetFlowState(BaseModel):
    """Resumable reset-flow state.

    ``phase = RESETTING`` is only constructible together with a proof;
    the validator rejects anything else, and the flow turns that
    rejection into a not-found outcome.
    """

    phase: ResetPhase = ResetPhase.VERIFYING
    verification_proof: Optional[str] = Field(default=None, repr=False)
    abandoned: bool = False

    @model_validator(mode="after")
    def _require_proof_for_reset(self) -> "ResetFlowState":
        if self.phase == ResetPhase.RESETTING and not self.verification_proof:
            raise ValueError("phase=resetting requires a verification proof")
        return self


# ---------------------------------------------------------------------------
# View-facing results
# ---------------------------------------------------------------------------

class FlowNotice(BaseModel):
    """A message bound to exactly one rendering surface."""

    message: str
    surface: MessageSurface = MessageSurface.FORM
    category: Optional[ErrorCategory] = None


class FlowResult(BaseModel):
    """Unified response for every flow operation.

    The view inspects ``success`` to decide the happy-path vs.
    error-path rendering, ``surface`` to decide where the message goes,
    and ``captcha_required`` to decide whether the widget is shown.

    Attributes
    ----------
    success:
        ``True`` when the operation completed without error.
    issued:
        ``True`` when a backend call was actually made.  Gated no-ops
        (cooldown, in-flight, locked) report ``False``.
    error_code / category / message / surface:
        Failure classification (``None`` on success, except ``message``
        which may carry a confirmation).
    captcha_required:
        Whether the next submission of this flow needs a verified token.
    remaining_seconds:
        Cooldown left before a resend is accepted.
    route:
        Where to navigate after a completed flow.
    session:
        The session established by a sign-in flow.
    """

    success: bool
    issued: bool = False
    error_code: Optional[AuthErrorCode] = None
    category: Optional[ErrorCategory] = None
    message: Optional[str] = None
    surface: MessageSurface = MessageSurface.FORM
    captcha_required: bool = False
    remaining_seconds: int = 0
    route: Optional[str] = None
    session: Optional[SessionResult] = None

    model_config = {"from_attributes": True}

    @classmethod
    def failure(
        cls,
        code: AuthErrorCode,
        message: Optional[str] = None,
        surface: MessageSurface = MessageSurface.FORM,
        **fields: object,
    ) -> "FlowResult":
        """Build a failed result with the category derived from *code*."""
        return cls(
            success=False,
            error_code=code,
            category=ERROR_CATEGORIES[code],
            message=message or ERROR_MESSAGES[code],
            surface=surface,
            **fields,
        )

    def notice(self) -> Optional[FlowNotice]:
        """Return the message of this result as a surface-bound notice."""
        if not self.message:
            return None
        return FlowNotice(
            message=self.message,
            surface=self.surface,
            category=self.category,
        )
