"""
Application Configuration.

Pydantic Settings model for the authflow controller.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Backend ---
    API_BASE_URL: str = ""
    HTTP_TIMEOUT_S: float = 10.0

    # --- Durable scoped store ---
    STORE_PATH: str = "authflow_store.db"

    # --- Escalation policy ---
    # Single source of truth for the CAPTCHA threshold.  Every
    # AttemptGuard reads it from here; nothing else hardcodes 3.
    CAPTCHA_THRESHOLD: int = Field(default=3, ge=1)

    # --- OTP resend cooldown ---
    OTP_RESEND_COOLDOWN_S: int = Field(default=30, ge=0)
    COUNTDOWN_TICK_S: float = Field(default=1.0, gt=0)

    # --- CAPTCHA widget ---
    CAPTCHA_HIDE_DELAY_S: float = Field(default=1.0, ge=0)

    # --- Cross-tab session propagation ---
    SESSION_POLL_INTERVAL_S: float = Field(default=1.0, gt=0)

    # --- Token vault ---
    TOKEN_KDF_ITERATIONS: int = Field(default=200_000, ge=1)

    # --- Routing ---
    ROLE_ROUTES: dict[str, str] = Field(default_factory=lambda: {
        "admin": "/admin",
        "rootadmin": "/admin",
    })
    DEFAULT_ROUTE: str = "/user"
    SIGN_IN_PATH: str = "/sign-in"
    RESET_PATH: str = "/forgot-password"

    # --- Logging ---
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when critical configuration is empty.

        Pydantic silently falls back to defaults when ``.env`` is missing.
        This validator logs a warning so operators know the controller is
        running with placeholder values.
        """
        _log = logging.getLogger("authflow.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found; all configuration loaded from "
                "environment variables or defaults."
            )

        if not self.API_BASE_URL:
            _log.warning(
                "API_BASE_URL is empty; backend calls will target "
                "http://localhost:3000."
            )

        return self

    @property
    def api_base_url(self) -> str:
        """Backend base URL with the local development fallback applied."""
        return (self.API_BASE_URL or "http://localhost:3000").rstrip("/")


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    On first call, creates an ``AppConfig`` instance (reading from ``.env``).
    Subsequent calls return the same instance.  Uses a check-lock-check
    pattern to avoid the lock overhead on the fast path while remaining
    thread-safe during first initialisation.

    Prefer direct constructor injection of ``AppConfig`` in new code.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
