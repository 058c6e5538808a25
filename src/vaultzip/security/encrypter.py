"""Purpose-bound encryption of small values at rest.

Values kept in the database that must be recoverable by the server (a file's
data key, a user's licence key) are sealed with AES-256-GCM under a key derived
from the process master secret. The caller's *purpose* string is bound in as
associated data, so a value sealed for one purpose cannot be opened as another.

Token layout: url-safe base64 of ``nonce(12) || ciphertext || tag(16)``.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..core.config import AppConfig
from ..core.exceptions import KeyUnwrapError

NONCE_SIZE = 12
TAG_SIZE = 16


def _derive_at_rest_key(master_secret: bytes, info: bytes = b"vaultzip-at-rest") -> bytes:
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=info)
    return hkdf.derive(master_secret)


class Encrypter:
    """Seal and open short values under the master secret of an AppConfig."""

    def __init__(self, config: AppConfig):
        self._aead = AESGCM(_derive_at_rest_key(bytes(config.app_key)))

    def encrypt(self, value: bytes, purpose: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        ct = self._aead.encrypt(nonce, value, purpose.encode("utf-8"))
        return base64.urlsafe_b64encode(nonce + ct).decode("ascii")

    def decrypt(self, token: str, purpose: str) -> bytes:
        """Open a token sealed by :meth:`encrypt`; raises KeyUnwrapError on any failure."""
        if not isinstance(token, str):
            raise KeyUnwrapError("Encrypted value must be a string")
        try:
            blob = base64.urlsafe_b64decode(token.encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError) as e:
            raise KeyUnwrapError("Encrypted value is not valid base64") from e
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise KeyUnwrapError("Encrypted value is too short")

        nonce, ct = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, ct, purpose.encode("utf-8"))
        except InvalidTag as e:
            raise KeyUnwrapError(
                f"Unable to decrypt value for purpose {purpose!r}"
            ) from e
