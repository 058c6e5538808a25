"""Per-file data keys and their at-rest wrapping."""

from __future__ import annotations

import os

from ..core.config import AppConfig
from ..core.exceptions import KeyUnwrapError
from ..core.models import FILE_KEY_SIZE, IV_SIZE
from .encrypter import Encrypter

FILE_KEY_PURPOSE = "File Upload"


class KeyCodec:
    """
    Generate file keys and wrap them for storage between requests.

    The wrapped form is bound to :data:`FILE_KEY_PURPOSE`, so it cannot be
    confused with other values encrypted under the same master secret.
    """

    def __init__(self, config: AppConfig, purpose: str = FILE_KEY_PURPOSE):
        self._encrypter = Encrypter(config)
        self.purpose = purpose

    @staticmethod
    def generate_file_key() -> bytes:
        return os.urandom(FILE_KEY_SIZE)

    @staticmethod
    def generate_iv() -> bytes:
        # fresh per encryption; an IV is never reused with the same key
        return os.urandom(IV_SIZE)

    def wrap_for_storage(self, file_key: bytes) -> str:
        if len(file_key) != FILE_KEY_SIZE:
            raise ValueError(f"file key must be {FILE_KEY_SIZE} bytes")
        return self._encrypter.encrypt(file_key, self.purpose)

    def unwrap_from_storage(self, wrapped: str) -> bytes:
        file_key = self._encrypter.decrypt(wrapped, self.purpose)
        if len(file_key) != FILE_KEY_SIZE:
            raise KeyUnwrapError("Stored file key has an invalid length")
        return file_key
