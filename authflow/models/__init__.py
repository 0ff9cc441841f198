from __future__ import annotations

"""
Data Models Package.

Re-exports the flow models and enumerations:
    from authflow.models import FlowResult, SessionResult, OtpChallenge
    from authflow.models import FlowKey, MessageSurface, AuthErrorCode
"""

from authflow.models.auth_models import (
    AttemptCounter,
    AuthErrorCode,
    CaptchaToken,
    ChallengeHandle,
    ErrorCategory,
    FlowNotice,
    FlowResult,
    OtpChallenge,
    ResetFlowState,
    SessionResult,
    ValidationResult,
    VerificationResponse,
)
from authflow.models.enums import (
    CaptchaState,
    CredentialSignInState,
    FlowKey,
    MessageSurface,
    OtpPurpose,
    OtpSignInState,
    ResetPhase,
    ResetState,
    SignInMethod,
)
from authflow.models.locations import ResetLocation, SignInLocation

__all__ = [
    "AttemptCounter",
    "AuthErrorCode",
    "CaptchaState",
    "CaptchaToken",
    "ChallengeHandle",
    "CredentialSignInState",
    "ErrorCategory",
    "FlowKey",
    "FlowNotice",
    "FlowResult",
    "MessageSurface",
    "OtpChallenge",
    "OtpPurpose",
    "OtpSignInState",
    "ResetFlowState",
    "ResetLocation",
    "ResetPhase",
    "ResetState",
    "SessionResult",
    "SignInLocation",
    "SignInMethod",
    "ValidationResult",
    "VerificationResponse",
]
