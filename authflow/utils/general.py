"""General Utility Functions.

Client-side field validation for the flow controllers.  These checks
are local and immediately retryable; they never count as a failed
attempt against an ``AttemptGuard``.
"""

from __future__ import annotations

import re

from authflow.models.auth_models import ValidationResult

__all__ = [
    "normalize_email",
    "validate_email",
    "validate_new_password",
    "validate_password_confirmation",
]


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMAIL_RE: re.Pattern[str] = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

_SPECIAL_CHAR_RE: re.Pattern[str] = re.compile(r"[!@#$%^&*(),.?\":{}|<>\-_=+\[\]\\;'/`~]")

_MIN_PASSWORD_LENGTH: int = 8


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------


def normalize_email(email: str) -> str:
    """Normalise an email address: strip whitespace and lowercase."""
    return email.strip().lower()


def validate_email(email: str) -> ValidationResult:
    """Validate an email address against a simplified RFC 5322 regex.

    Only used to reject obviously malformed input before a send; the
    existence of the account is never checked client-side.
    """
    if not email or not email.strip():
        return ValidationResult(
            is_valid=False,
            error_message="Email address is required.",
        )
    if not _EMAIL_RE.match(email.strip()):
        return ValidationResult(
            is_valid=False,
            error_message="Please enter a valid email address.",
        )
    return ValidationResult(is_valid=True)


# ---------------------------------------------------------------------------
# New credential policy
# ---------------------------------------------------------------------------


def validate_new_password(password: str) -> ValidationResult:
    """Enforce the password policy for a reset.

    Policy: minimum 8 characters, at least 1 uppercase letter,
    1 lowercase letter, 1 digit, and 1 special character.
    """
    if len(password) < _MIN_PASSWORD_LENGTH:
        return ValidationResult(
            is_valid=False,
            error_message="Password must be at least 8 characters.",
        )
    if not re.search(r"[A-Z]", password):
        return ValidationResult(
            is_valid=False,
            error_message="Password must contain at least one uppercase letter.",
        )
    if not re.search(r"[a-z]", password):
        return ValidationResult(
            is_valid=False,
            error_message="Password must contain at least one lowercase letter.",
        )
    if not re.search(r"\d", password):
        return ValidationResult(
            is_valid=False,
            error_message="Password must contain at least one digit.",
        )
    if not _SPECIAL_CHAR_RE.search(password):
        return ValidationResult(
            is_valid=False,
            error_message="Password must contain at least one special character.",
        )
    return ValidationResult(is_valid=True)


def validate_password_confirmation(password: str, confirmation: str) -> ValidationResult:
    if password != confirmation:
        return ValidationResult(
            is_valid=False,
            error_message="Passwords do not match.",
        )
    return ValidationResult(is_valid=True)

