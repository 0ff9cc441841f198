"""
CAPTCHA Challenge Controller.

Owns the lifecycle of one single-use CAPTCHA token for one flow:

    absent --request--> pending --verified--> verified --consume--> absent
                           |                      |
                           +--expired / errored---+--> (fresh instance id)

The widget itself is rendered by the view; this controller only decides
*which* widget instance is current (``instance_id``), whether it is
visible, and which message sits next to it.  A bumped ``instance_id``
tells the view to throw the old widget away and mount a fresh one.

Tokens are single-use.  ``consume()`` hands the token out exactly once
and clears it before the submission is even sent, so a second
submission (even one racing a pending first) can never reuse it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Optional

from authflow.config import AppConfig
from authflow.database import DatabaseManager
from authflow.exceptions import MissingChallenge
from authflow.logger import StructuredLogger
from authflow.models.auth_models import CaptchaToken, ChallengeHandle
from authflow.models.enums import CaptchaState, FlowKey
from authflow.services.base_service import BaseService
from authflow.utils.audit import AuditAction

EXPIRED_MESSAGE: str = "reCAPTCHA expired. Please verify again."
ERRORED_MESSAGE: str = "reCAPTCHA verification failed. Please try again."


class CaptchaChallengeController(BaseService):
    """Single-use CAPTCHA token holder for one flow key.

    Parameters
    ----------
    flow_key:
        The flow this widget belongs to.
    config:
        Supplies ``CAPTCHA_HIDE_DELAY_S``.
    logger:
        Structured logger instance.
    db:
        Optional database for persisted audit events.
    on_escalation_cleared:
        Called when a widget shown because of an escalation hides itself
        after a successful verification.
    """

    def __init__(
        self,
        flow_key: FlowKey,
        config: AppConfig,
        logger: StructuredLogger,
        db: Optional[DatabaseManager] = None,
        on_escalation_cleared: Optional[Callable[[], None]] = None,
    ) -> None:
        super().__init__(logger, db)
        self._flow_key = flow_key
        self._hide_delay_s: float = config.CAPTCHA_HIDE_DELAY_S
        self._token: CaptchaToken = CaptchaToken()
        self._instance_id: int = 0
        self._visible: bool = False
        self._escalated: bool = False
        self._error_message: Optional[str] = None
        self._hide_handle: Optional[asyncio.TimerHandle] = None
        self.on_escalation_cleared: Optional[Callable[[], None]] = on_escalation_cleared

    # ------------------------------------------------------------------
    # View-facing state
    # ------------------------------------------------------------------

    @property
    def flow_key(self) -> FlowKey:
        return self._flow_key

    @property
    def state(self) -> CaptchaState:
        return self._token.state

    @property
    def handle(self) -> ChallengeHandle:
        return ChallengeHandle(flow_key=self._flow_key, instance_id=self._instance_id)

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def error_message(self) -> Optional[str]:
        return self._error_message

    @property
    def has_verified_token(self) -> bool:
        return self._token.state == CaptchaState.VERIFIED and bool(self._token.value)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def request_challenge(
        self, reason: Optional[str] = None, escalation: bool = False,
    ) -> ChallengeHandle:
        """Show a fresh widget instance.

        Any token still held is discarded: a regenerated challenge must
        be solved again.
        """
        self._cancel_hide()
        self._instance_id += 1
        self._token = CaptchaToken(state=CaptchaState.PENDING)
        self._visible = True
        self._error_message = reason
        if escalation and not self._escalated:
            self._escalated = True
            self._audit(
                AuditAction.CAPTCHA_ESCALATED,
                self._flow_key,
                "client",
                {"instance_id": self._instance_id},
            )
        self._logger.info(
            "CAPTCHA challenge requested.",
            extra={"flow_key": str(self._flow_key), "instance_id": self._instance_id},
        )
        return self.handle

    def on_verified(self, token: str) -> None:
        """Store the widget's token; hide the widget after the display delay."""
        if not token:
            self.on_error(ERRORED_MESSAGE)
            return
        self._token = CaptchaToken(value=token, state=CaptchaState.VERIFIED)
        self._error_message = None
        self._schedule_hide()

    def on_expired(self) -> None:
        self._invalidate(CaptchaState.EXPIRED, EXPIRED_MESSAGE)

    def on_error(self, reason: Optional[str] = None) -> None:
        self._invalidate(CaptchaState.ERRORED, reason or ERRORED_MESSAGE)

    def consume(self) -> str:
        """Hand out the verified token exactly once.

        Raises
        ------
        MissingChallenge
            If no verified token is held.
        """
        held = self._token
        if held.state != CaptchaState.VERIFIED or not held.value:
            raise MissingChallenge(f"{self._flow_key}: no verified CAPTCHA token")
        self._token = CaptchaToken()
        return held.value

    def consume_if_verified(self) -> Optional[str]:
        """Consume the token when one is verified, else return ``None``."""
        return self.consume() if self.has_verified_token else None

    def reset(self) -> None:
        """Discard the token and hide the widget; next challenge is fresh."""
        self._cancel_hide()
        self._token = CaptchaToken()
        self._instance_id += 1
        self._visible = False
        self._escalated = False
        self._error_message = None

    def teardown(self) -> None:
        self._cancel_hide()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _invalidate(self, state: CaptchaState, message: str) -> None:
        self._cancel_hide()
        self._token = CaptchaToken(state=state)
        self._instance_id += 1
        self._visible = True
        self._error_message = message
        self._logger.info(
            "CAPTCHA token invalidated (%s).",
            state,
            extra={"flow_key": str(self._flow_key), "instance_id": self._instance_id},
        )

    def _schedule_hide(self) -> None:
        self._cancel_hide()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._hide()
            return
        self._hide_handle = loop.call_later(self._hide_delay_s, self._hide)

    def _cancel_hide(self) -> None:
        if self._hide_handle is not None:
            self._hide_handle.cancel()
            self._hide_handle = None

    def _hide(self) -> None:
        self._hide_handle = None
        self._visible = False
        if self._escalated:
            self._escalated = False
            if self.on_escalation_cleared is not None:
                self.on_escalation_cleared()
