"""
Shared Enumerations for authflow Models.

All string enumerations for type-safe field constraints.
StrEnum values compare equal to their string equivalents, so
``flow_key == "sign-in-password"`` keeps working where a raw string
arrives from the store or a URL.
"""

from __future__ import annotations

from enum import StrEnum


class FlowKey(StrEnum):
    """Independent state-machine instances.

    Failure and escalation state is persisted per key, so failing the
    password path never forces CAPTCHA on the OTP path.
    """

    SIGN_IN_PASSWORD = "sign-in-password"
    SIGN_IN_OTP = "sign-in-otp"
    RESET_VERIFY = "reset-verify"
    RESET_SUBMIT = "reset-submit"


class OtpPurpose(StrEnum):
    """Which backend OTP routes a challenge manager talks to."""

    SIGN_IN = "sign_in"
    PASSWORD_RESET = "password_reset"


class CaptchaState(StrEnum):
    """Lifecycle of a single-use CAPTCHA token."""

    ABSENT = "absent"
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    ERRORED = "errored"


class MessageSurface(StrEnum):
    """The single place a flow message is rendered.

    A condition is attached to exactly one surface, never two.
    """

    FORM = "form"
    EMAIL_FIELD = "email_field"
    CODE_FIELD = "code_field"
    CAPTCHA = "captcha"


class SignInMethod(StrEnum):
    """Tabs of the sign-in screen."""

    PASSWORD = "password"
    OTP = "otp"


class CredentialSignInState(StrEnum):
    ENTERING_EMAIL = "entering_email"
    ENTERING_PASSWORD = "entering_password"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    REJECTED = "rejected"


class OtpSignInState(StrEnum):
    AWAITING_SEND = "awaiting_send"
    AWAITING_CODE = "awaiting_code"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    REJECTED = "rejected"


class ResetState(StrEnum):
    """States of the resumable credential-reset flow.

    ``NOT_FOUND`` is terminal: it is rendered instead of the reset form
    whenever step 2 is requested without proof of step 1.
    """

    VERIFYING_IDENTITY = "verifying_identity"
    RESETTING_CREDENTIAL = "resetting_credential"
    SUCCESS = "success"
    FAILED = "failed"
    NOT_FOUND = "not_found"


class ResetPhase(StrEnum):
    """Externalised step of the reset flow (the ``step`` URL parameter)."""

    VERIFYING = "1"
    RESETTING = "2"
