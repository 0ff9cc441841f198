"""
Attempt Guard.

Counts consecutive rejected submissions per flow key in the durable
scoped store (``attempts.<flowKey>``) so that a reload does not reset
escalation.  Once the count reaches the threshold, CAPTCHA is mandatory
for that flow until a success clears the counter.

Lockout is a separate, terminal condition declared by the backend.  It
is held in memory for the life of the flow instance: the backend stays
the authority and will declare it again on the next attempt.
"""

from __future__ import annotations

from typing import Optional

from authflow.config import AppConfig
from authflow.database import DatabaseManager
from authflow.logger import StructuredLogger
from authflow.models.auth_models import AttemptCounter
from authflow.models.enums import FlowKey
from authflow.services.base_service import BaseService
from authflow.services.scoped_store import ScopedStore
from authflow.utils.audit import AuditAction


def attempts_key(flow_key: FlowKey) -> str:
    return f"attempts.{flow_key}"


class AttemptGuard(BaseService):
    """Failure counter and lockout holder shared by the flows.

    Parameters
    ----------
    store:
        Durable scoped store holding the counters.
    config:
        Supplies ``CAPTCHA_THRESHOLD``.
    logger:
        Structured logger instance.
    db:
        Optional database for persisted audit events.
    """

    def __init__(
        self,
        store: ScopedStore,
        config: AppConfig,
        logger: StructuredLogger,
        db: Optional[DatabaseManager] = None,
    ) -> None:
        super().__init__(logger, db)
        self._store = store
        self._threshold: int = config.CAPTCHA_THRESHOLD
        self._locks: dict[FlowKey, str] = {}

    @property
    def threshold(self) -> int:
        return self._threshold

    # ------------------------------------------------------------------
    # Escalation
    # ------------------------------------------------------------------

    def counter(self, flow_key: FlowKey) -> AttemptCounter:
        return AttemptCounter(
            flow_key=flow_key,
            count=self._store.get_int(attempts_key(flow_key)),
            threshold=self._threshold,
        )

    def count(self, flow_key: FlowKey) -> int:
        return self._store.get_int(attempts_key(flow_key))

    def record_failure(self, flow_key: FlowKey) -> bool:
        """Count one rejected submission.

        Returns ``True`` only for the failure that lands exactly on the
        threshold: the one-time "CAPTCHA now required" transition.
        """
        count = self._store.increment(attempts_key(flow_key))
        crossed = count == self._threshold
        self._logger.info(
            "Failed attempt recorded (%d/%d).",
            count,
            self._threshold,
            extra={"flow_key": str(flow_key)},
        )
        if crossed:
            self._audit(
                AuditAction.CAPTCHA_ESCALATED,
                flow_key,
                "client",
                {"count": count, "threshold": self._threshold},
            )
        return crossed

    def require_captcha(self, flow_key: FlowKey) -> None:
        """Follow a backend-declared escalation by raising the count to
        the threshold.  Never lowers it."""
        count = self._store.raise_to(attempts_key(flow_key), self._threshold)
        self._logger.info(
            "Backend declared CAPTCHA required (count now %d).",
            count,
            extra={"flow_key": str(flow_key)},
        )

    def is_captcha_required(self, flow_key: FlowKey) -> bool:
        return self.count(flow_key) >= self._threshold

    def record_success(self, flow_key: FlowKey) -> None:
        self._store.delete(attempts_key(flow_key))
        self._locks.pop(flow_key, None)

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    def record_lockout(self, flow_key: FlowKey, detail: str) -> None:
        """Mark *flow_key* terminally locked; *detail* is shown verbatim."""
        self._locks[flow_key] = detail
        self._logger.warning(
            "Flow locked by backend.", extra={"flow_key": str(flow_key)},
        )
        self._audit(AuditAction.LOCKOUT, flow_key, "client", {"detail": detail})

    def is_locked(self, flow_key: FlowKey) -> bool:
        return flow_key in self._locks

    def lock_detail(self, flow_key: FlowKey) -> Optional[str]:
        return self._locks.get(flow_key)

    def clear_lockout(self, flow_key: FlowKey) -> None:
        self._locks.pop(flow_key, None)
