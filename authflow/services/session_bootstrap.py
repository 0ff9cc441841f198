"""
Session Bootstrap.

Turns a completed sign-in into an active session:

1. seals the bearer / refresh tokens with the token vault and writes
   them to the durable scoped store;
2. updates the in-process ``SessionManager``;
3. writes ``session.changedAt`` last, as the cross-window signal other
   windows of the same user listen for;
4. asks the realtime channel to re-authenticate with the new token;
5. picks the route to land on.

The reverse path (sign-out, or another window changing the session) goes
through the same store keys.
"""

from __future__ import annotations

from typing import Optional, Protocol

from authflow.auth import SessionManager
from authflow.config import AppConfig
from authflow.database import DatabaseManager
from authflow.logger import StructuredLogger
from authflow.models.auth_models import FlowResult, SessionResult
from authflow.services.base_service import BaseService
from authflow.services.countdown import Clock, utc_now
from authflow.services.scoped_store import ScopedStore
from authflow.services.token_vault import TokenVault
from authflow.utils.audit import AuditAction

BEARER_TOKEN_KEY: str = "session.bearerToken"
REFRESH_TOKEN_KEY: str = "session.refreshToken"
ROLE_KEY: str = "session.role"
CHANGED_AT_KEY: str = "session.changedAt"

_SESSION_FLOW: str = "session"


class RealtimeChannel(Protocol):
    """Live connection that must follow the current bearer token."""

    async def reconnect(self, bearer_token: Optional[str]) -> None: ...


class NullRealtimeChannel:
    """Used when the application holds no realtime connection."""

    async def reconnect(self, bearer_token: Optional[str]) -> None:
        return None


def is_safe_redirect(target: Optional[str]) -> bool:
    """Only same-origin relative paths are honoured as redirect targets."""
    return bool(target) and target.startswith("/") and not target.startswith("//")


class SessionBootstrap(BaseService):
    """Finalises sign-ins and keeps windows in agreement about the session.

    Parameters
    ----------
    store:
        Durable scoped store shared by every window.
    vault:
        Seals tokens before they reach the store.
    session:
        In-process session holder.
    config:
        Supplies the routing table.
    logger:
        Structured logger instance.
    db:
        Optional database for persisted audit events.
    realtime:
        Channel to re-authenticate after a session change.
    clock:
        Returns the current UTC time.
    """

    def __init__(
        self,
        store: ScopedStore,
        vault: TokenVault,
        session: SessionManager,
        config: AppConfig,
        logger: StructuredLogger,
        db: Optional[DatabaseManager] = None,
        realtime: Optional[RealtimeChannel] = None,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(logger, db)
        self._store = store
        self._vault = vault
        self._session = session
        self._role_routes: dict[str, str] = {
            role.lower(): route for role, route in config.ROLE_ROUTES.items()
        }
        self._default_route: str = config.DEFAULT_ROUTE
        self._realtime: RealtimeChannel = realtime or NullRealtimeChannel()
        self._clock = clock

    # ------------------------------------------------------------------
    # Sign-in / sign-out
    # ------------------------------------------------------------------

    async def finalize(
        self, result: SessionResult, redirect: Optional[str] = None,
    ) -> FlowResult:
        """Establish *result* as the session and return where to go."""
        self._store.set(BEARER_TOKEN_KEY, self._vault.seal(result.bearer_token))
        if result.refresh_token:
            self._store.set(REFRESH_TOKEN_KEY, self._vault.seal(result.refresh_token))
        else:
            self._store.delete(REFRESH_TOKEN_KEY)
        self._store.set(ROLE_KEY, result.role)
        self._session.establish(result)
        self._mark_changed()

        self._audit(
            AuditAction.SESSION_ESTABLISHED,
            _SESSION_FLOW,
            result.email or result.role,
            {"role": result.role, "is_new_account": result.is_new_account},
        )
        await self._reconnect(result.bearer_token)

        return FlowResult(
            success=True,
            issued=True,
            route=self.route_for(result.role, redirect),
            session=result,
        )

    async def sign_out(self) -> None:
        """Drop the session here and, through the store, in every window."""
        role = self._session.role or "anonymous"
        for key in (BEARER_TOKEN_KEY, REFRESH_TOKEN_KEY, ROLE_KEY):
            self._store.delete(key)
        self._session.clear()
        self._mark_changed()
        self._audit(AuditAction.SESSION_CLEARED, _SESSION_FLOW, role)
        await self._reconnect(None)

    def route_for(self, role: str, redirect: Optional[str] = None) -> str:
        if is_safe_redirect(redirect):
            return redirect  # type: ignore[return-value]
        return self._role_routes.get(role.lower(), self._default_route)

    # ------------------------------------------------------------------
    # Restore / cross-window
    # ------------------------------------------------------------------

    def restore(self) -> Optional[SessionResult]:
        """Load the stored session into the ``SessionManager``.

        Returns ``None`` (and clears the in-process session) when no
        token is stored or the stored token cannot be opened.
        """
        bearer = self._vault.open(self._store.get(BEARER_TOKEN_KEY))
        if bearer is None:
            self._session.clear()
            return None
        restored = SessionResult(
            bearer_token=bearer,
            refresh_token=self._vault.open(self._store.get(REFRESH_TOKEN_KEY)),
            role=self._store.get(ROLE_KEY) or "user",
        )
        self._session.establish(restored)
        return restored

    async def on_external_change(self, key: str, value: Optional[str]) -> None:
        """Another window changed the session: follow it."""
        restored = self.restore()
        self._logger.info(
            "Session changed in another window.",
            extra={"event": "SESSION_CHANGED_EXTERNALLY", "signed_in": restored is not None},
        )
        self._audit(
            AuditAction.SESSION_CHANGED_EXTERNALLY,
            _SESSION_FLOW,
            restored.role if restored else "anonymous",
            {"changed_at": value},
        )
        await self._reconnect(restored.bearer_token if restored else None)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _mark_changed(self) -> None:
        self._store.set(CHANGED_AT_KEY, self._clock().isoformat())

    async def _reconnect(self, bearer_token: Optional[str]) -> None:
        try:
            await self._realtime.reconnect(bearer_token)
        except Exception:
            # The session is established either way; the channel retries
            # on its own schedule.
            self._logger.error("Realtime channel reconnect failed.", exc_info=True)
