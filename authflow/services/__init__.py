"""
Flow Controller Services Package.

Contains the collaborators (scoped store, token vault, transport, backend
adapter, attempt guard, CAPTCHA and OTP controllers, session bootstrap)
and the three flow state machines built on top of them.

The ``create_services()`` factory wires every collaborator and flow
together, returning a typed dict that the view layer can consume without
knowing the internal dependency graph.
"""

from __future__ import annotations

from typing import Optional, TypedDict

from authflow.auth import SessionManager
from authflow.config import AppConfig
from authflow.database import DatabaseManager
from authflow.logger import StructuredLogger, get_logger
from authflow.models.enums import FlowKey, OtpPurpose
from authflow.services.attempt_guard import AttemptGuard
from authflow.services.auth_backend import AuthBackend, HttpAuthBackend
from authflow.services.captcha_challenge import CaptchaChallengeController
from authflow.services.countdown import Clock, utc_now
from authflow.services.credential_sign_in import CredentialSignInFlow
from authflow.services.otp_challenge import OtpChallengeManager
from authflow.services.otp_sign_in import OtpSignInFlow
from authflow.services.reset_flow import ResumableResetFlow
from authflow.services.scoped_store import ScopedStore
from authflow.services.session_bootstrap import (
    CHANGED_AT_KEY,
    RealtimeChannel,
    SessionBootstrap,
)
from authflow.services.session_sync import StoreChangeListener
from authflow.services.sign_in_screen import SignInScreen
from authflow.services.token_vault import TokenVault
from authflow.services.transport import AuthTransport


class ServiceContainer(TypedDict, total=False):
    """Typed container for all controller services.

    ``transport`` is ``None`` when a pre-built backend was injected.
    """

    # --- Collaborators ---
    store: ScopedStore
    vault: TokenVault
    transport: Optional[AuthTransport]
    backend: AuthBackend
    attempt_guard: AttemptGuard
    session_bootstrap: SessionBootstrap
    change_listener: StoreChangeListener

    # --- Flows ---
    credential_sign_in: CredentialSignInFlow
    otp_sign_in: OtpSignInFlow
    reset_flow: ResumableResetFlow
    sign_in_screen: SignInScreen


def create_services(
    db: DatabaseManager,
    config: AppConfig,
    session: SessionManager,
    backend: Optional[AuthBackend] = None,
    realtime: Optional[RealtimeChannel] = None,
    clock: Clock = utc_now,
    vault_identity: Optional[str] = None,
    logger: Optional[StructuredLogger] = None,
) -> ServiceContainer:
    """
    Wire all collaborators and flows together.

    This is the single composition root for the service layer.  The
    application entry-point calls this once per window and passes the
    returned dict to the view.

    Args:
        db: Initialised DatabaseManager with the schema applied.
        config: Application configuration.
        session: In-process session holder shared with the transport.
        backend: Pre-built backend adapter (tests inject a scripted one).
            An ``HttpAuthBackend`` over ``AuthTransport`` is built when
            omitted.
        realtime: Realtime channel to re-authenticate on session change.
        clock: Source of the current UTC time.
        vault_identity: Key material override for the token vault.
        logger: Logger shared by every service; defaults to
            ``authflow.services``.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = logger or get_logger("authflow.services")

    # ------------------------------------------------------------------
    # 1. Storage
    # ------------------------------------------------------------------
    store = ScopedStore(db=db, logger=logger)
    vault = TokenVault(store=store, config=config, logger=logger, identity=vault_identity)

    # ------------------------------------------------------------------
    # 2. Backend
    # ------------------------------------------------------------------
    transport: Optional[AuthTransport] = None
    if backend is None:
        transport = AuthTransport(config=config, session=session, logger=logger)
        backend = HttpAuthBackend(transport=transport, logger=logger)

    # ------------------------------------------------------------------
    # 3. Shared collaborators
    # ------------------------------------------------------------------
    guard = AttemptGuard(store=store, config=config, logger=logger, db=db)
    bootstrap = SessionBootstrap(
        store=store,
        vault=vault,
        session=session,
        config=config,
        logger=logger,
        db=db,
        realtime=realtime,
        clock=clock,
    )
    listener = StoreChangeListener(store=store, config=config, logger=logger)
    listener.subscribe(CHANGED_AT_KEY, bootstrap.on_external_change)

    # ------------------------------------------------------------------
    # 4. Flows (one CAPTCHA controller per flow key)
    # ------------------------------------------------------------------
    credential = CredentialSignInFlow(
        backend=backend,
        guard=guard,
        captcha=CaptchaChallengeController(FlowKey.SIGN_IN_PASSWORD, config, logger, db),
        bootstrap=bootstrap,
        logger=logger,
        db=db,
    )

    otp_manager = OtpChallengeManager(
        backend=backend,
        store=store,
        flow_key=FlowKey.SIGN_IN_OTP,
        purpose=OtpPurpose.SIGN_IN,
        captcha=CaptchaChallengeController(FlowKey.SIGN_IN_OTP, config, logger, db),
        config=config,
        logger=logger,
        db=db,
        clock=clock,
    )
    otp = OtpSignInFlow(
        backend=backend,
        manager=otp_manager,
        guard=guard,
        bootstrap=bootstrap,
        logger=logger,
        db=db,
    )

    reset_manager = OtpChallengeManager(
        backend=backend,
        store=store,
        flow_key=FlowKey.RESET_VERIFY,
        purpose=OtpPurpose.PASSWORD_RESET,
        captcha=CaptchaChallengeController(FlowKey.RESET_VERIFY, config, logger, db),
        config=config,
        logger=logger,
        db=db,
        clock=clock,
    )
    reset = ResumableResetFlow(
        backend=backend,
        store=store,
        manager=reset_manager,
        guard=guard,
        captcha=CaptchaChallengeController(FlowKey.RESET_SUBMIT, config, logger, db),
        bootstrap=bootstrap,
        config=config,
        logger=logger,
        db=db,
    )

    screen = SignInScreen(credential=credential, otp=otp, config=config, logger=logger)

    return ServiceContainer(
        store=store,
        vault=vault,
        transport=transport,
        backend=backend,
        attempt_guard=guard,
        session_bootstrap=bootstrap,
        change_listener=listener,
        credential_sign_in=credential,
        otp_sign_in=otp,
        reset_flow=reset,
        sign_in_screen=screen,
    )
