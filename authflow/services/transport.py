"""
Auth Transport.

Thin async wrapper around ``httpx.AsyncClient`` that attaches the
cross-cutting headers every state-changing backend call needs:

- ``X-CSRF-Token``: a single-use anti-forgery token, fetched fresh from
  ``GET /api/auth/csrf-token`` before *every* call.  The server deletes
  the token after use, so it is never cached.
- ``Authorization: Bearer <token>``: only when a session already exists.

Transport failures are raised as ``BackendRejection(NETWORK_ERROR)`` so
that the flow boundary only ever deals with one exception type.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from authflow.auth import SessionManager
from authflow.config import AppConfig
from authflow.exceptions import BackendRejection
from authflow.logger import StructuredLogger
from authflow.models.auth_models import AuthErrorCode

CSRF_PATH: str = "/api/auth/csrf-token"


class AuthTransport:
    """Async HTTP client bound to the backend base URL.

    Parameters
    ----------
    config:
        Supplies ``api_base_url`` and ``HTTP_TIMEOUT_S``.
    session:
        Source of the current bearer token.
    logger:
        Structured logger instance.
    client:
        Pre-built ``httpx.AsyncClient`` (tests pass one backed by
        ``httpx.MockTransport``).  Built from *config* when omitted.
    """

    def __init__(
        self,
        config: AppConfig,
        session: SessionManager,
        logger: StructuredLogger,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._session = session
        self._logger = logger
        self._client: httpx.AsyncClient = client or httpx.AsyncClient(
            base_url=config.api_base_url,
            timeout=config.HTTP_TIMEOUT_S,
        )

    async def fetch_anti_forgery_token(self) -> str:
        """Fetch a fresh single-use anti-forgery token."""
        try:
            response = await self._client.get(
                CSRF_PATH, headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            token = response.json().get("csrfToken")
        except httpx.HTTPError as exc:
            self._logger.warning(
                "Anti-forgery token fetch failed: %s", exc, exc_info=True,
            )
            raise BackendRejection(AuthErrorCode.NETWORK_ERROR) from exc
        except ValueError as exc:
            self._logger.warning("Anti-forgery token response is not JSON.")
            raise BackendRejection(AuthErrorCode.UNKNOWN_ERROR) from exc

        if not token:
            self._logger.warning("No anti-forgery token received from server.")
            raise BackendRejection(AuthErrorCode.UNKNOWN_ERROR)
        return str(token)

    async def post(self, path: str, payload: dict[str, Any]) -> httpx.Response:
        """POST *payload* as JSON to *path* with fresh transport headers."""
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "X-CSRF-Token": await self.fetch_anti_forgery_token(),
        }
        bearer = self._session.bearer_token
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"

        try:
            return await self._client.post(path, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            self._logger.warning(
                "Network error calling %s: %s", path, exc, exc_info=True,
            )
            raise BackendRejection(AuthErrorCode.NETWORK_ERROR) from exc

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AuthTransport":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
