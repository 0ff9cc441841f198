"""
Sign-In Screen.

Hosts the password and OTP flows as two tabs of one screen.  The active
tab, the email and an optional post-sign-in redirect live in the URL
(``/sign-in?tab=otp&email=...&redirect=...``).  Switching tabs carries
the typed email across and discards any typed password.
"""

from __future__ import annotations

from typing import Optional

from authflow.config import AppConfig
from authflow.logger import StructuredLogger
from authflow.models.auth_models import FlowResult
from authflow.models.enums import CredentialSignInState, SignInMethod
from authflow.models.locations import SignInLocation
from authflow.services.credential_sign_in import CredentialSignInFlow
from authflow.services.otp_sign_in import OtpSignInFlow


class SignInScreen:
    def __init__(
        self,
        credential: CredentialSignInFlow,
        otp: OtpSignInFlow,
        config: AppConfig,
        logger: StructuredLogger,
    ) -> None:
        self._credential = credential
        self._otp = otp
        self._path: str = config.SIGN_IN_PATH
        self._logger = logger
        self._method: SignInMethod = SignInMethod.PASSWORD
        self._redirect: Optional[str] = None

    @property
    def method(self) -> SignInMethod:
        return self._method

    @property
    def credential(self) -> CredentialSignInFlow:
        return self._credential

    @property
    def otp(self) -> OtpSignInFlow:
        return self._otp

    @property
    def redirect(self) -> Optional[str]:
        return self._redirect

    @property
    def email(self) -> str:
        if self._method == SignInMethod.OTP:
            return self._otp.email
        return self._credential.email

    @property
    def location_url(self) -> str:
        return SignInLocation(
            method=self._method, email=self.email, redirect=self._redirect,
        ).to_url(self._path)

    def from_location(self, url: str) -> SignInMethod:
        """Enter the screen from *url*; pre-fills the email of both tabs."""
        location = SignInLocation.parse(url)
        self._redirect = location.redirect
        if location.email:
            self._credential.set_email(location.email)
            self._otp.set_email(location.email)
        self._method = location.method
        self._active_mount()
        return self._method

    def switch_to(self, method: SignInMethod) -> str:
        """Change tab and return the URL of the new tab."""
        if method == self._method:
            return self.location_url
        email = self.email
        if method == SignInMethod.OTP:
            self._credential.clear_password()
            if email:
                self._otp.set_email(email)
        else:
            if self._credential.state == CredentialSignInState.ENTERING_PASSWORD:
                self._credential.edit_email()
            if email:
                self._credential.set_email(email)
        self._method = method
        self._logger.debug("Sign-in tab switched to %s.", method)
        self._active_mount()
        return self.location_url

    async def submit_password(self) -> FlowResult:
        return await self._credential.submit(self._redirect)

    async def submit_code(self, code: str) -> FlowResult:
        return await self._otp.submit(code, self._redirect)

    def teardown(self) -> None:
        self._credential.teardown()
        self._otp.teardown()

    def _active_mount(self) -> None:
        if self._method == SignInMethod.OTP:
            self._otp.mount()
        else:
            self._credential.mount()
