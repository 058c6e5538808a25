"""Licence-key-derived sealing of file keys for transport to the client.

The server re-seals a file's data key under a key both sides can derive from
the user's licence key, so the client can recover it without ever seeing the
server master secret. The client performs the exact inverse with
:meth:`KeyWrapper.open`.
"""

from __future__ import annotations

import os
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..core.exceptions import AuthenticationError
from ..core.models import FILE_KEY_SIZE, IV_SIZE, SALT_SIZE, TAG_SIZE
from .kdf import (
    DEFAULT_MEMORY_COST,
    DEFAULT_PARALLELISM,
    DEFAULT_TIME_COST,
    derive_key,
    generate_salt,
)

KEY_TAMPER_MESSAGE = (
    "Unable to unwrap the file key. The file was modified or the licence key is incorrect."
)


class KeyWrapper:
    def __init__(
        self,
        time_cost: int = DEFAULT_TIME_COST,
        memory_cost: int = DEFAULT_MEMORY_COST,
        parallelism: int = DEFAULT_PARALLELISM,
    ):
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism

    @classmethod
    def from_config(cls, config) -> "KeyWrapper":
        return cls(
            time_cost=config.kdf_time_cost,
            memory_cost=config.kdf_memory_cost,
            parallelism=config.kdf_parallelism,
        )

    def derive_key(self, licence_key: str, salt: bytes) -> bytes:
        if len(salt) != SALT_SIZE:
            raise ValueError(f"salt must be {SALT_SIZE} bytes")
        return derive_key(
            licence_key,
            salt,
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
        )

    def seal(self, file_key: bytes, derived_key: bytes, iv: bytes) -> Tuple[bytes, bytes]:
        """Encrypt ``file_key``; returns ``(ciphertext, auth_tag)``."""
        if len(file_key) != FILE_KEY_SIZE:
            raise ValueError(f"file key must be {FILE_KEY_SIZE} bytes")
        if len(iv) != IV_SIZE:
            raise ValueError(f"iv must be {IV_SIZE} bytes")
        sealed = AESGCM(derived_key).encrypt(iv, file_key, None)
        return sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]

    def open(self, ciphertext: bytes, derived_key: bytes, iv: bytes, auth_tag: bytes) -> bytes:
        """Recover the file key; raises AuthenticationError if the tag does not verify."""
        if len(iv) != IV_SIZE or len(auth_tag) != TAG_SIZE:
            raise AuthenticationError(KEY_TAMPER_MESSAGE)
        try:
            file_key = AESGCM(derived_key).decrypt(iv, ciphertext + auth_tag, None)
        except InvalidTag as e:
            raise AuthenticationError(KEY_TAMPER_MESSAGE) from e
        if len(file_key) != FILE_KEY_SIZE:
            raise AuthenticationError(KEY_TAMPER_MESSAGE)
        return file_key

    def wrap_for_client(self, file_key: bytes, licence_key: str) -> Tuple[bytes, bytes, bytes, bytes]:
        """Seal under a fresh salt and IV; returns ``(salt, iv, ciphertext, auth_tag)``."""
        salt = generate_salt(SALT_SIZE)
        iv = os.urandom(IV_SIZE)
        ciphertext, auth_tag = self.seal(file_key, self.derive_key(licence_key, salt), iv)
        return salt, iv, ciphertext, auth_tag

    def unwrap_from_client_bundle(self, metadata, licence_key: str) -> bytes:
        """Inverse of :meth:`wrap_for_client` driven by a bundle header."""
        if len(metadata.key_salt) != SALT_SIZE:
            raise AuthenticationError(KEY_TAMPER_MESSAGE)
        derived = self.derive_key(licence_key, metadata.key_salt)
        return self.open(
            metadata.wrapped_key_for_client, derived, metadata.key_iv, metadata.key_auth_tag
        )
