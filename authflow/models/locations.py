"""
Resumable References.

The reset flow's step and the pre-filled email are the only externally
addressable state in the controller.  They travel in a shareable URL
(``/forgot-password?step=2&email=a%40x.com``) so that a reload lands
the user on the same step.  The sign-in screen uses the same mechanism
for its active tab.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit

from pydantic import BaseModel

from authflow.models.enums import ResetPhase, SignInMethod


def _query_value(url: str, name: str) -> Optional[str]:
    values = parse_qs(urlsplit(url).query).get(name)
    return values[0] if values else None


def _with_query(path: str, params: dict[str, str]) -> str:
    query = urlencode({k: v for k, v in params.items() if v})
    return f"{path}?{query}" if query else path


class ResetLocation(BaseModel):
    """``step`` and ``email`` of the reset page.

    An unknown ``step`` value is read as step 1; only an explicit
    ``step=2`` asks for the credential form.
    """

    phase: ResetPhase = ResetPhase.VERIFYING
    email: str = ""

    @classmethod
    def parse(cls, url: str) -> "ResetLocation":
        step = _query_value(url, "step")
        phase = ResetPhase.RESETTING if step == ResetPhase.RESETTING else ResetPhase.VERIFYING
        return cls(phase=phase, email=_query_value(url, "email") or "")

    def to_url(self, path: str) -> str:
        return _with_query(path, {"step": str(self.phase), "email": self.email})


class SignInLocation(BaseModel):
    """``tab``, ``email`` and ``redirect`` of the sign-in page."""

    method: SignInMethod = SignInMethod.PASSWORD
    email: str = ""
    redirect: Optional[str] = None

    @classmethod
    def parse(cls, url: str) -> "SignInLocation":
        tab = _query_value(url, "tab")
        method = SignInMethod.OTP if tab == SignInMethod.OTP else SignInMethod.PASSWORD
        return cls(
            method=method,
            email=_query_value(url, "email") or "",
            redirect=_query_value(url, "redirect"),
        )

    def to_url(self, path: str) -> str:
        return _with_query(
            path,
            {
                "tab": str(self.method),
                "email": self.email,
                "redirect": self.redirect or "",
            },
        )
