"""
Session State.

Provides an injectable ``SessionManager`` that holds the active
``SessionResult`` for the lifetime of the running process.  The durable
copy of the tokens lives in the scoped store (sealed by the token
vault); this object is the in-memory view every component reads.

Usage::

    from authflow.auth import SessionManager
    from authflow.models.auth_models import SessionResult

    session = SessionManager()
    session.establish(SessionResult(bearer_token="...", role="user"))
    token = session.bearer_token
"""

from __future__ import annotations

import threading
from typing import Optional

from authflow.models.auth_models import SessionResult


class SessionManager:
    """Injectable holder for the current session.

    Each instance maintains its own session state, eliminating the
    need for module-level globals.  Pass a single ``SessionManager``
    through your dependency-injection layer so every component shares
    the same session.
    """

    def __init__(self) -> None:
        self._lock: threading.RLock = threading.RLock()
        self._current: Optional[SessionResult] = None

    def establish(self, session: SessionResult) -> None:
        """Record *session* as the active session."""
        with self._lock:
            self._current = session

    def get_current_session(self) -> SessionResult:
        """Return the active session.

        Raises:
            RuntimeError: If no session is currently established.
        """
        with self._lock:
            if self._current is None:
                raise RuntimeError(
                    "No session is currently established. Sign-in required."
                )
            return self._current

    @property
    def bearer_token(self) -> Optional[str]:
        """Return the current bearer token, or ``None`` if not set."""
        with self._lock:
            return self._current.bearer_token if self._current else None

    @property
    def refresh_token(self) -> Optional[str]:
        with self._lock:
            return self._current.refresh_token if self._current else None

    @property
    def role(self) -> Optional[str]:
        with self._lock:
            return self._current.role if self._current else None

    def clear(self) -> None:
        """Drop the active session."""
        with self._lock:
            self._current = None

    @property
    def is_authenticated(self) -> bool:
        """``True`` when a session is currently established."""
        with self._lock:
            return self._current is not None
