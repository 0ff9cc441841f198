"""Shared utility functions and models for the authflow controller.

This package provides convenience re-exports so that consumers can import
directly from ``authflow.utils`` (e.g. ``from authflow.utils import
normalize_email``) while full absolute imports remain supported.
"""

from authflow.utils.audit import AuditAction, AuditEvent, log_audit_event
from authflow.utils.general import (
    normalize_email,
    validate_email,
    validate_new_password,
    validate_password_confirmation,
)

__all__ = [
    "AuditAction",
    "AuditEvent",
    "log_audit_event",
    "normalize_email",
    "validate_email",
    "validate_new_password",
    "validate_password_confirmation",
]
