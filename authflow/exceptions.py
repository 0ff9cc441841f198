"""
Flow Exception Hierarchy.

``AuthFlowError`` is the base for every typed error raised inside the
controller.  None of these reach the view: each flow catches them at its
own boundary and converts them to a ``FlowResult``.
"""

from __future__ import annotations

from typing import Optional

from authflow.models.auth_models import ERROR_MESSAGES, AuthErrorCode


class AuthFlowError(RuntimeError):
    """Base class for controller errors."""

    error_code: AuthErrorCode = AuthErrorCode.UNKNOWN_ERROR


class BackendRejection(AuthFlowError):
    """The backend (or the transport in front of it) refused a call.

    Attributes
    ----------
    code:
        Classified failure reason.
    message:
        Text to display.
    detail:
        Raw backend message.  Lockout and suspension details are shown
        verbatim since they may carry a "try again after" time.
    requires_captcha:
        The backend declared that the next call needs a CAPTCHA token.
    status_code:
        HTTP status, when the rejection came from an HTTP response.
    """

    def __init__(
        self,
        code: AuthErrorCode,
        message: Optional[str] = None,
        *,
        detail: Optional[str] = None,
        requires_captcha: bool = False,
        status_code: Optional[int] = None,
    ) -> None:
        self.code: AuthErrorCode = code
        self.message: str = message or ERROR_MESSAGES[code]
        self.detail: Optional[str] = detail
        self.requires_captcha: bool = requires_captcha
        self.status_code: Optional[int] = status_code
        super().__init__(self.message)

    @property
    def error_code(self) -> AuthErrorCode:  # type: ignore[override]
        return self.code


class MissingChallenge(AuthFlowError):
    """A submission needed a verified CAPTCHA token and none was held."""

    error_code = AuthErrorCode.MISSING_CHALLENGE


class IllegalTransition(AuthFlowError):
    """A state transition not listed in the flow's transition table."""

    error_code = AuthErrorCode.VALIDATION_ERROR

    def __init__(self, flow_key: str, from_state: str, to_state: str) -> None:
        self.flow_key = flow_key
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"{flow_key}: illegal transition {from_state} -> {to_state}"
        )


class ActionInFlight(AuthFlowError):
    """A second action was started while one is still awaiting the backend."""

    error_code = AuthErrorCode.ACTION_IN_FLIGHT

    def __init__(self, action: str, busy_with: Optional[str] = None) -> None:
        self.action = action
        self.busy_with = busy_with
        super().__init__(
            f"cannot start {action!r} while {busy_with or action!r} is in flight"
        )
