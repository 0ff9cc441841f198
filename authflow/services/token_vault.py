"""
Token Vault.

Seals session tokens before they are written to the durable scoped
store, so a copied store file does not hand out a usable bearer token.

Security model
--------------
- The key is derived at runtime from machine identity (hostname + OS
  username) via PBKDF2-HMAC-SHA256 with a random per-store salt kept
  under ``vault.salt``.  The key itself is never persisted.
- Values are sealed with AES-256-GCM, providing both confidentiality
  and integrity.  A tampered value, or one sealed on another machine,
  opens to ``None`` instead of raising.

Sealed layout (URL-safe base64)::

    nonce (16 bytes) | tag (16 bytes) | ciphertext
"""

from __future__ import annotations

import base64
import binascii
import getpass
import socket
import threading
from typing import Optional

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2
from Crypto.Random import get_random_bytes

from authflow.config import AppConfig
from authflow.logger import StructuredLogger
from authflow.services.scoped_store import ScopedStore

_SALT_KEY: str = "vault.salt"


class TokenVault:
    """Seals and opens token strings with a machine-bound key.

    Parameters
    ----------
    store:
        The scoped store holding the vault salt.
    config:
        Supplies ``TOKEN_KDF_ITERATIONS``.
    logger:
        Structured logger instance.
    identity:
        Key material override.  Defaults to ``"<hostname>:<os user>"``.
    """

    _KEY_LENGTH: int = 32  # 256 bits
    _SALT_LENGTH: int = 32
    _NONCE_LENGTH: int = 16
    _TAG_LENGTH: int = 16

    def __init__(
        self,
        store: ScopedStore,
        config: AppConfig,
        logger: StructuredLogger,
        identity: Optional[str] = None,
    ) -> None:
        self._store = store
        self._iterations: int = config.TOKEN_KDF_ITERATIONS
        self._logger = logger
        self._identity: str = identity or f"{socket.gethostname()}:{getpass.getuser()}"
        self._key: Optional[bytes] = None
        self._key_lock: threading.Lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def seal(self, plaintext: str) -> str:
        cipher = AES.new(self._derive_key(), AES.MODE_GCM, nonce=get_random_bytes(self._NONCE_LENGTH))
        ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode("utf-8"))
        return base64.urlsafe_b64encode(cipher.nonce + tag + ciphertext).decode("ascii")

    def open(self, sealed: Optional[str]) -> Optional[str]:
        """Return the plaintext of *sealed*, or ``None`` if it cannot be
        authenticated."""
        if not sealed:
            return None
        try:
            raw: bytes = base64.urlsafe_b64decode(sealed.encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError):
            self._logger.warning("Sealed token is not valid base64; ignoring it.")
            return None

        header = self._NONCE_LENGTH + self._TAG_LENGTH
        if len(raw) <= header:
            self._logger.warning("Sealed token is truncated; ignoring it.")
            return None

        nonce, tag, ciphertext = (
            raw[: self._NONCE_LENGTH],
            raw[self._NONCE_LENGTH : header],
            raw[header:],
        )
        try:
            cipher = AES.new(self._derive_key(), AES.MODE_GCM, nonce=nonce)
            plaintext: bytes = cipher.decrypt_and_verify(ciphertext, tag)
        except (ValueError, KeyError) as exc:
            self._logger.warning(
                "Sealed token failed authentication (tampered or sealed "
                "under another identity): %s",
                exc,
            )
            return None
        return plaintext.decode("utf-8")

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _derive_key(self) -> bytes:
        """Derive (once) the 256-bit AES key from identity and salt."""
        with self._key_lock:
            if self._key is None:
                self._key = PBKDF2(
                    password=self._identity,
                    salt=self._get_or_create_salt(),
                    dkLen=self._KEY_LENGTH,
                    count=self._iterations,
                    hmac_hash_module=SHA256,
                )
            return self._key

    def _get_or_create_salt(self) -> bytes:
        candidate: str = get_random_bytes(self._SALT_LENGTH).hex()
        stored: str = self._store.setdefault(_SALT_KEY, candidate)
        try:
            salt = bytes.fromhex(stored)
        except ValueError:
            salt = b""
        if len(salt) != self._SALT_LENGTH:
            # Corrupt or wrong-length: regenerate.  Values sealed under the
            # old salt become unreadable and open to None.
            self._logger.warning(
                "Vault salt has unexpected length (%d); regenerating.", len(salt),
            )
            self._store.set(_SALT_KEY, candidate)
            salt = bytes.fromhex(candidate)
        return salt
