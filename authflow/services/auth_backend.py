"""
Credential-Verification Backend.

``AuthBackend`` is the request/response contract the flow controllers
consume.  ``HttpAuthBackend`` implements it over the REST routes of the
auth API and is the only place that knows HTTP status codes or response
field names.

Every failure is raised as a ``BackendRejection`` carrying an
``AuthErrorCode``; the flows never see ``httpx`` types.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Optional, Protocol

import httpx

from authflow.exceptions import BackendRejection
from authflow.logger import StructuredLogger
from authflow.models.auth_models import (
    ERROR_MESSAGES,
    AuthErrorCode,
    SessionResult,
    VerificationResponse,
)
from authflow.models.enums import OtpPurpose
from authflow.services.transport import AuthTransport


class AuthBackend(Protocol):
    """Backend calls used by the flow controllers."""

    async def send_otp(
        self, email: str, purpose: OtpPurpose, captcha_token: Optional[str] = None,
    ) -> None: ...

    async def verify_otp(
        self, email: str, code: str, purpose: OtpPurpose,
    ) -> VerificationResponse: ...

    async def sign_in_with_credential(
        self, email: str, password: str, captcha_token: Optional[str] = None,
    ) -> SessionResult: ...

    async def sign_in_with_otp(
        self, email: str, code: str, captcha_token: Optional[str] = None,
    ) -> SessionResult: ...

    async def reset_credential(
        self, proof: str, new_credential: str, captcha_token: Optional[str] = None,
    ) -> Optional[SessionResult]: ...

    async def issue_anti_forgery_token(self) -> str: ...


# ---------------------------------------------------------------------------
# REST routes
# ---------------------------------------------------------------------------

SIGN_IN_ROUTE: str = "/api/auth/signin"
SEND_LOGIN_OTP_ROUTE: str = "/api/auth/send-login-otp"
VERIFY_LOGIN_OTP_ROUTE: str = "/api/auth/verify-login-otp"
SEND_RESET_OTP_ROUTE: str = "/api/auth/send-forgot-password-otp"
VERIFY_OTP_ROUTE: str = "/api/auth/verify-otp"
RESET_PASSWORD_ROUTE: str = "/api/auth/reset-password"

_SEND_ROUTES: dict[OtpPurpose, str] = {
    OtpPurpose.SIGN_IN: SEND_LOGIN_OTP_ROUTE,
    OtpPurpose.PASSWORD_RESET: SEND_RESET_OTP_ROUTE,
}

# ``type`` the verify route reports for a password-reset code.
_RESET_VERIFICATION_TYPE: str = "forgotPassword"

_PENDING_APPROVAL_MESSAGE: str = (
    "Your admin account is pending approval. Please wait for an existing "
    "admin to approve your request."
)
_REJECTED_MESSAGE: str = (
    "Your admin account request has been rejected. Please contact support "
    "for more information."
)


class CallKind(StrEnum):
    """Which failure vocabulary a route's ``success: false`` body uses."""

    SEND = "send"
    VERIFY = "verify"
    CREDENTIAL = "credential"
    RESET = "reset"


def _suspension_message(message: str) -> str:
    """Normalise a 403 message into the text shown to the user."""
    lowered = message.lower()
    if "pending approval" in lowered:
        return _PENDING_APPROVAL_MESSAGE
    if "rejected" in lowered:
        return _REJECTED_MESSAGE
    if "suspended" in lowered:
        # A cooling-off suspension carries its end time; show it as-is.
        if "try again after" in lowered:
            return message
        return ERROR_MESSAGES[AuthErrorCode.ACCOUNT_SUSPENDED]
    return message or ERROR_MESSAGES[AuthErrorCode.ACCOUNT_SUSPENDED]


def classify_response(response: httpx.Response, kind: CallKind) -> dict[str, Any]:
    """Return the JSON body of a successful response, or raise.

    Raises
    ------
    BackendRejection
        With the ``AuthErrorCode`` matching the status code and body.
    """
    status = response.status_code
    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        # Gateway pages and the like: the body says nothing about the
        # attempt, so it must never reach the per-route fallbacks below.
        if status == 429:
            raise BackendRejection(AuthErrorCode.RATE_LIMITED, status_code=status)
        raise BackendRejection(AuthErrorCode.UNKNOWN_ERROR, status_code=status)

    message: str = str(data.get("message") or "")
    lowered = message.lower()
    requires_captcha = bool(data.get("requiresCaptcha"))

    if status == 429:
        raise BackendRejection(
            AuthErrorCode.RATE_LIMITED,
            message or None,
            detail=message or None,
            status_code=status,
        )
    if status == 423:
        code = (
            AuthErrorCode.FLOW_LOCKED
            if kind == CallKind.RESET
            else AuthErrorCode.ACCOUNT_LOCKED
        )
        raise BackendRejection(
            code, message or None, detail=message or None, status_code=status,
        )
    if status == 403:
        raise BackendRejection(
            AuthErrorCode.ACCOUNT_SUSPENDED,
            _suspension_message(message),
            detail=message or None,
            status_code=status,
        )
    if status >= 500:
        raise BackendRejection(
            AuthErrorCode.UNKNOWN_ERROR, detail=message or None, status_code=status,
        )

    if data.get("success") is not False and status < 400:
        return data

    if "too many" in lowered:
        raise BackendRejection(
            AuthErrorCode.RATE_LIMITED,
            message,
            detail=message,
            status_code=status,
        )
    if kind == CallKind.RESET and "multiple failed reset attempts" in lowered:
        raise BackendRejection(
            AuthErrorCode.FLOW_LOCKED, message, detail=message, status_code=status,
        )
    if "recaptcha verification failed" in lowered:
        raise BackendRejection(
            AuthErrorCode.CAPTCHA_FAILED,
            message,
            detail=message,
            requires_captcha=True,
            status_code=status,
        )
    if "recaptcha" in lowered or (requires_captcha and kind != CallKind.VERIFY):
        raise BackendRejection(
            AuthErrorCode.CAPTCHA_REQUIRED,
            message or None,
            detail=message or None,
            requires_captcha=True,
            status_code=status,
        )

    if kind == CallKind.VERIFY:
        # A wrong code may also switch on CAPTCHA for the next attempt.
        raise BackendRejection(
            AuthErrorCode.WRONG_CODE,
            message or None,
            detail=message or None,
            requires_captcha=requires_captcha,
            status_code=status,
        )
    if kind == CallKind.CREDENTIAL:
        raise BackendRejection(
            AuthErrorCode.INVALID_CREDENTIAL,
            message or None,
            detail=message or None,
            status_code=status,
        )
    if kind == CallKind.RESET:
        raise BackendRejection(
            AuthErrorCode.VALIDATION_ERROR,
            message or None,
            detail=message or None,
            status_code=status,
        )
    raise BackendRejection(
        AuthErrorCode.UNKNOWN_ERROR,
        message or None,
        detail=message or None,
        status_code=status,
    )


def _session_from_body(data: dict[str, Any]) -> SessionResult:
    token = data.get("token")
    if not token:
        raise BackendRejection(AuthErrorCode.UNKNOWN_ERROR)
    return SessionResult(
        bearer_token=str(token),
        refresh_token=data.get("refreshToken"),
        role=str(data.get("role") or "user"),
        is_new_account=data.get("isNewUser"),
        user_id=data.get("_id"),
        email=data.get("email"),
    )


class HttpAuthBackend:
    """``AuthBackend`` over the REST auth API.

    Parameters
    ----------
    transport:
        Attaches the anti-forgery and bearer headers to every call.
    logger:
        Structured logger instance.
    """

    def __init__(self, transport: AuthTransport, logger: StructuredLogger) -> None:
        self._transport = transport
        self._logger = logger

    async def send_otp(
        self, email: str, purpose: OtpPurpose, captcha_token: Optional[str] = None,
    ) -> None:
        payload: dict[str, Any] = {"email": email}
        if captcha_token:
            payload["recaptchaToken"] = captcha_token
        response = await self._transport.post(_SEND_ROUTES[purpose], payload)
        classify_response(response, CallKind.SEND)

    async def verify_otp(
        self, email: str, code: str, purpose: OtpPurpose,
    ) -> VerificationResponse:
        response = await self._transport.post(
            VERIFY_OTP_ROUTE, {"email": email, "otp": code},
        )
        data = classify_response(response, CallKind.VERIFY)
        if purpose != OtpPurpose.PASSWORD_RESET:
            return VerificationResponse(verified=True)

        if data.get("type") != _RESET_VERIFICATION_TYPE or not data.get("userId"):
            self._logger.warning(
                "Verify response did not carry a reset proof (type=%s).",
                data.get("type"),
            )
            raise BackendRejection(AuthErrorCode.WRONG_CODE, data.get("message") or None)
        return VerificationResponse(
            verified=True, verification_proof=str(data["userId"]),
        )

    async def sign_in_with_credential(
        self, email: str, password: str, captcha_token: Optional[str] = None,
    ) -> SessionResult:
        payload: dict[str, Any] = {"email": email, "password": password}
        if captcha_token:
            payload["recaptchaToken"] = captcha_token
        response = await self._transport.post(SIGN_IN_ROUTE, payload)
        return _session_from_body(classify_response(response, CallKind.CREDENTIAL))

    async def sign_in_with_otp(
        self, email: str, code: str, captcha_token: Optional[str] = None,
    ) -> SessionResult:
        payload: dict[str, Any] = {"email": email, "otp": code}
        if captcha_token:
            payload["recaptchaToken"] = captcha_token
        response = await self._transport.post(VERIFY_LOGIN_OTP_ROUTE, payload)
        return _session_from_body(classify_response(response, CallKind.VERIFY))

    async def reset_credential(
        self, proof: str, new_credential: str, captcha_token: Optional[str] = None,
    ) -> Optional[SessionResult]:
        payload: dict[str, Any] = {
            "userId": proof,
            "newPassword": new_credential,
            "confirmPassword": new_credential,
        }
        if captcha_token:
            payload["recaptchaToken"] = captcha_token
        response = await self._transport.post(RESET_PASSWORD_ROUTE, payload)
        data = classify_response(response, CallKind.RESET)
        return _session_from_body(data) if data.get("token") else None

    async def issue_anti_forgery_token(self) -> str:
        return await self._transport.fetch_anti_forgery_token()
