"""
Token vault - encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM from the ``cryptography`` library. Ciphertext is stored as
``nonce_hex:tag_hex:ciphertext_hex``. The key is 32 bytes, configured as 64
hex characters in ``TOKEN_ENCRYPTION_KEY``. Generate one with::

    openssl rand -hex 32

A missing or wrong key is always an error: callers get
:class:`CryptoError` and must not persist or use the token.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import settings

logger = logging.getLogger(__name__)

_NONCE_BYTES = 12
_TAG_BYTES = 16
_KEY_BYTES = 32


class CryptoError(Exception):
    """Vault misuse: missing key, malformed ciphertext, or failed authentication."""


def parse_key(raw: Optional[str]) -> Optional[bytes]:
    """Decode a hex key from configuration; None when unset."""
    if not raw:
        return None
    try:
        key = bytes.fromhex(raw.strip())
    except ValueError as exc:
        raise CryptoError("TOKEN_ENCRYPTION_KEY must be hex encoded") from exc
    if len(key) != _KEY_BYTES:
        raise CryptoError(
            f"TOKEN_ENCRYPTION_KEY must be {_KEY_BYTES} bytes ({_KEY_BYTES * 2} hex chars), got {len(key)}"
        )
    return key


class TokenVault:
    """Symmetric encryption for credentials. No I/O."""

    def __init__(self, key: Optional[bytes]) -> None:
        if key is not None and len(key) != _KEY_BYTES:
            raise CryptoError(f"Encryption key must be {_KEY_BYTES} bytes")
        self._aead: Optional[AESGCM] = AESGCM(key) if key is not None else None

    @classmethod
    def from_settings(cls) -> "TokenVault":
        key = parse_key(settings.TOKEN_ENCRYPTION_KEY)
        if key is None:
            logger.warning("TOKEN_ENCRYPTION_KEY not set - token encryption/decryption will fail")
        return cls(key)

    @property
    def is_configured(self) -> bool:
        return self._aead is not None

    def _cipher(self) -> AESGCM:
        if self._aead is None:
            raise CryptoError("Encryption key unavailable (TOKEN_ENCRYPTION_KEY not configured)")
        return self._aead

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(_NONCE_BYTES)
        # AESGCM appends the 16-byte tag to the ciphertext
        sealed = self._cipher().encrypt(nonce, plaintext.encode("utf-8"), None)
        body, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return f"{nonce.hex()}:{tag.hex()}:{body.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        cipher = self._cipher()
        parts = ciphertext.split(":") if isinstance(ciphertext, str) else []
        if len(parts) != 3:
            raise CryptoError("Malformed ciphertext: expected nonce:tag:ciphertext")

        try:
            nonce, tag, body = (bytes.fromhex(part) for part in parts)
        except ValueError as exc:
            raise CryptoError("Malformed ciphertext: invalid hex") from exc

        if len(nonce) != _NONCE_BYTES or len(tag) != _TAG_BYTES:
            raise CryptoError("Malformed ciphertext: bad nonce or tag length")

        try:
            plaintext = cipher.decrypt(nonce, body + tag, None)
        except InvalidTag as exc:
            raise CryptoError("Decryption failed: wrong key or tampered ciphertext") from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CryptoError("Decrypted token is not valid UTF-8") from exc
