"""
Base Service Class.

Minimal base class standardizing the logger and audit pattern for all
services.  Services extend this and add their own collaborators via
__init__.
"""

from __future__ import annotations

from typing import Optional

from authflow.database import DatabaseManager
from authflow.logger import StructuredLogger
from authflow.utils.audit import AuditAction, DetailValue, log_audit_event


class BaseService:
    """Base class for all service classes. Provides a logger and an
    audit helper that persists to ``audit_log`` when a database is
    available."""

    def __init__(
        self,
        logger: StructuredLogger,
        db: Optional[DatabaseManager] = None,
    ) -> None:
        self._logger: StructuredLogger = logger
        self._audit_db: Optional[DatabaseManager] = db

    def _audit(
        self,
        action: AuditAction,
        flow_key: str,
        subject: str,
        details: Optional[dict[str, DetailValue]] = None,
    ) -> None:
        if self._audit_db is None:
            log_audit_event(self._logger, action, flow_key, subject, details)
            return
        with self._audit_db.write_lock:
            log_audit_event(
                self._logger,
                action,
                flow_key,
                subject,
                details,
                conn=self._audit_db.sqlite,
            )
