"""
Security Audit Trail.

Every security-relevant transition of a flow (CAPTCHA escalation,
lockout, OTP issued, identity verified, reset completed or abandoned,
session established or cleared) is written as an ``AUDIT:`` JSON log
line and, when a connection is given, as a row of ``audit_log``.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from authflow.logger import REDACTED, StructuredLogger, is_secret_key

__all__ = ["AuditAction", "AuditEvent", "log_audit_event", "persist_audit_event"]

# Flat scalars only.
DetailValue = Union[str, int, float, bool, None]


class AuditAction(StrEnum):
    CAPTCHA_ESCALATED = "CAPTCHA_ESCALATED"
    LOCKOUT = "LOCKOUT"
    OTP_SENT = "OTP_SENT"
    IDENTITY_VERIFIED = "IDENTITY_VERIFIED"
    RESET_COMPLETED = "RESET_COMPLETED"
    RESET_ABANDONED = "RESET_ABANDONED"
    SESSION_ESTABLISHED = "SESSION_ESTABLISHED"
    SESSION_CLEARED = "SESSION_CLEARED"
    SESSION_CHANGED_EXTERNALLY = "SESSION_CHANGED_EXTERNALLY"


class AuditEvent(BaseModel):
    """One audit trail entry.

    ``subject`` names who the event is about (an email address or a
    role).  Detail values under a secret-looking key are masked on
    construction, so neither the log line nor the row can carry them.
    """

    timestamp: str
    action: AuditAction
    flow_key: str
    subject: str
    details: dict[str, DetailValue] = Field(default_factory=dict)

    @field_validator("details")
    @classmethod
    def _mask_secret_details(cls, v: dict[str, DetailValue]) -> dict[str, DetailValue]:
        return {key: REDACTED if is_secret_key(key) else value for key, value in v.items()}


def log_audit_event(
    logger: StructuredLogger,
    action: AuditAction,
    flow_key: str,
    subject: str,
    details: Optional[dict[str, DetailValue]] = None,
    conn: Optional[sqlite3.Connection] = None,
) -> AuditEvent:
    """Log an audit event and, when *conn* is given, persist it.

    Args:
        logger: The logger instance to write to.
        action: What happened.
        flow_key: The flow instance the event belongs to
            (``"session"`` for session-level events).
        subject: Email address or role the event is about.
        details: Optional additional context.
        conn: Optional SQLite connection for the ``audit_log`` row.

    Returns:
        The validated event.
    """
    event = AuditEvent(
        timestamp=datetime.now(timezone.utc).isoformat(),
        action=action,
        flow_key=flow_key,
        subject=subject,
        details=details or {},
    )
    logger.info(
        "AUDIT: %s",
        json.dumps(event.model_dump(mode="json"), default=str),
        extra={"event": str(action), "flow_key": flow_key},
    )

    # A failed insert is logged; the flow operation still completes.
    if conn is not None:
        try:
            persist_audit_event(conn=conn, event=event)
        except sqlite3.Error as db_err:
            logger.warning("Could not persist audit event %s: %s", action, db_err)
    return event


def persist_audit_event(conn: sqlite3.Connection, event: AuditEvent) -> None:
    """Insert *event* into ``audit_log`` (autocommit connection)."""
    conn.execute(
        "INSERT INTO audit_log (timestamp, action, flow_key, subject, details) "
        "VALUES (?, ?, ?, ?, ?)",
        (
            event.timestamp,
            str(event.action),
            event.flow_key,
            event.subject,
            json.dumps(event.details, default=str),
        ),
    )
