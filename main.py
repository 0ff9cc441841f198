"""
authflow Console Entry Point.

Bootstraps the entire dependency graph via constructor injection,
initialises the local SQLite store schema, and drives the sign-in
screen from a small interactive console.  Every subsystem is wired
here; no module-level globals.

Usage::

    python main.py [URL]

``URL`` is the location to open, e.g. ``/sign-in?tab=otp&email=a%40x.com``
or ``/forgot-password?step=1``.
"""

from __future__ import annotations

import asyncio
import atexit
import getpass
import sys
import traceback
from pathlib import Path
from typing import Optional

from authflow.auth import SessionManager
from authflow.config import AppConfig, get_config
from authflow.database import DatabaseManager
from authflow.logger import StructuredLogger, get_logger
from authflow.models.auth_models import FlowResult
from authflow.models.enums import SignInMethod
from authflow.schema import initialize_schema
from authflow.services import ServiceContainer, create_services

_HELP: str = """\
Commands:
  email ADDRESS        set the email of the active tab
  next                 (password tab) continue to the password step
  back                 (password tab) edit the email again
  password             (password tab) enter the password and sign in
  send                 (otp tab / reset) request or resend a code
  code CODE            (otp tab) sign in with the code
  verify CODE          (reset) verify the code
  proceed              (reset) continue to the new-password step
  newpass              (reset) enter and confirm the new password
  captcha TOKEN        complete the CAPTCHA of the active flow
  tab password|otp     switch sign-in tab
  open URL             navigate to a sign-in or reset URL
  signout              clear the session in every window
  quit
"""


def _print_result(result: FlowResult) -> None:
    if result.success:
        line = result.message or "OK"
        if result.route:
            line = f"{line} -> {result.route}"
        print(line)
        return
    print(f"[{result.surface}] {result.message}")
    if result.remaining_seconds:
        print(f"  retry in {result.remaining_seconds}s")
    if result.captcha_required:
        print("  CAPTCHA required: use 'captcha TOKEN'")


async def _prompt(text: str) -> str:
    return await asyncio.to_thread(input, text)


async def _run_console(services: ServiceContainer, config: AppConfig, url: str) -> None:
    screen = services["sign_in_screen"]
    reset = services["reset_flow"]
    bootstrap = services["session_bootstrap"]
    listener = services["change_listener"]

    on_reset_page = url.startswith(config.RESET_PATH)
    if on_reset_page:
        reset.load(url)
    else:
        screen.from_location(url)
    listener.start()

    print(_HELP)
    try:
        while True:
            location = reset.location_url if on_reset_page else screen.location_url
            line = (await _prompt(f"{location}> ")).strip()
            if not line:
                continue
            command, _, arg = line.partition(" ")
            result: Optional[FlowResult] = None

            if command == "quit":
                break
            elif command == "open":
                if on_reset_page:
                    reset.leave()
                on_reset_page = arg.startswith(config.RESET_PATH)
                state = reset.load(arg) if on_reset_page else screen.from_location(arg)
                print(state)
            elif command == "tab":
                if arg not in (SignInMethod.PASSWORD, SignInMethod.OTP):
                    print(_HELP)
                    continue
                print(screen.switch_to(SignInMethod(arg)))
            elif command == "email":
                if on_reset_page:
                    if not reset.set_email(arg):
                        result = reset.edit_email(arg)
                elif screen.method == SignInMethod.OTP:
                    if not screen.otp.set_email(arg):
                        result = screen.otp.edit_email(arg)
                else:
                    screen.credential.set_email(arg)
            elif command == "next":
                result = screen.credential.continue_to_password()
            elif command == "back":
                screen.credential.edit_email()
            elif command == "password":
                screen.credential.set_password(await asyncio.to_thread(getpass.getpass))
                result = await screen.submit_password()
            elif command == "send":
                if on_reset_page:
                    sent = reset.manager.sent
                    result = await (reset.resend_code() if sent else reset.send_code())
                elif screen.otp.manager.sent:
                    result = await screen.otp.resend()
                else:
                    result = await screen.otp.send_code()
            elif command == "code":
                result = await screen.submit_code(arg)
            elif command == "verify":
                result = await reset.verify_code(arg)
            elif command == "proceed":
                result = reset.proceed()
            elif command == "newpass":
                new = await asyncio.to_thread(getpass.getpass, "New password: ")
                confirm = await asyncio.to_thread(getpass.getpass, "Confirm: ")
                result = await reset.submit_new_credential(new, confirm)
            elif command == "captcha":
                if on_reset_page:
                    captcha = reset.captcha if reset.has_proof else reset.manager.captcha
                elif screen.method == SignInMethod.OTP:
                    captcha = screen.otp.manager.captcha
                else:
                    captcha = screen.credential.captcha
                captcha.on_verified(arg)
            elif command == "signout":
                await bootstrap.sign_out()
            else:
                print(_HELP)

            if result is not None:
                _print_result(result)
    finally:
        await listener.stop()
        screen.teardown()
        if on_reset_page:
            reset.leave()
        transport = services.get("transport")
        if transport is not None:
            await transport.aclose()


def main(argv: list[str]) -> None:
    """Application entry point: wire dependencies and run the console."""
    logger: StructuredLogger = get_logger("main")
    logger.info("Starting authflow...")

    # ------------------------------------------------------------------
    # 1. Configuration (from .env / environment variables)
    # ------------------------------------------------------------------
    config = get_config()

    # ------------------------------------------------------------------
    # 2. Durable scoped store (shared by every window of this user)
    # ------------------------------------------------------------------
    db = DatabaseManager(
        sqlite_path=Path(config.STORE_PATH),
        logger=StructuredLogger(name="database"),
    )
    # DatabaseManager.close() is idempotent.
    atexit.register(db.close)

    # ------------------------------------------------------------------
    # 3. Schema (idempotent)
    # ------------------------------------------------------------------
    initialize_schema(db.sqlite, StructuredLogger(name="schema"))

    # ------------------------------------------------------------------
    # 4. Session + services
    # ------------------------------------------------------------------
    session = SessionManager()
    services = create_services(db=db, config=config, session=session)
    restored = services["session_bootstrap"].restore()
    if restored is not None:
        logger.info("Restored stored session.", extra={"role": restored.role})

    url = argv[1] if len(argv) > 1 else config.SIGN_IN_PATH
    try:
        asyncio.run(_run_console(services, config, url))
    finally:
        db.close()
        logger.info("authflow shut down.")


def _show_fatal_error(exc: BaseException) -> None:
    detail = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    sys.stderr.write(f"FATAL: {type(exc).__name__}: {exc}\n{detail}")


if __name__ == "__main__":
    try:
        main(sys.argv)
    except (KeyboardInterrupt, EOFError):
        pass
    except Exception as exc:
        _show_fatal_error(exc)
        sys.exit(1)
