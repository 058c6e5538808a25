"""Streaming AES-256-GCM over async byte streams.

A transform wraps one ``cryptography`` GCM context and processes exactly one
stream from start to finish. Chunks are encrypted (or decrypted) as they
arrive, so nothing close to the full payload is ever held in memory.

Encryption exposes the 16-byte tag once the input has ended. Decryption takes
the expected tag up front and verifies it when the input ends; its
:meth:`DecryptingTransform.transform` always holds back the latest plaintext
chunk until verification succeeds, so the tail of the stream is never released
unauthenticated. Earlier chunks are still speculative until the stream ends:
callers writing them somewhere must discard that output on
:class:`AuthenticationError`.
"""

from __future__ import annotations

from typing import AsyncIterable, AsyncIterator, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ..core.exceptions import AuthenticationError
from ..core.models import FILE_KEY_SIZE, IV_SIZE, TAG_SIZE

TAMPER_MESSAGE = "Decryption failed. The file was modified or the licence key is incorrect."


def _check_key_iv(key: bytes, iv: bytes) -> None:
    if len(key) != FILE_KEY_SIZE:
        raise ValueError(f"key must be {FILE_KEY_SIZE} bytes")
    if len(iv) != IV_SIZE:
        raise ValueError(f"iv must be {IV_SIZE} bytes")


class _Transform:
    def __init__(self):
        self._started = False
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def _claim(self) -> None:
        if self._started:
            raise RuntimeError("a cipher transform can only process one stream")
        self._started = True

    def _require_open(self) -> None:
        if self._finished:
            raise RuntimeError("cipher transform already finalized")


class EncryptingTransform(_Transform):
    """Encrypt one stream; ``tag`` is available after :meth:`finalize`."""

    def __init__(self, key: bytes, iv: bytes):
        super().__init__()
        _check_key_iv(key, iv)
        self._ctx = Cipher(algorithms.AES(key), modes.GCM(iv)).encryptor()
        self._tag: Optional[bytes] = None
        self.bytes_processed = 0

    def update(self, chunk: bytes) -> bytes:
        self._require_open()
        self.bytes_processed += len(chunk)
        return self._ctx.update(chunk)

    def finalize(self) -> bytes:
        self._require_open()
        tail = self._ctx.finalize()
        self._tag = self._ctx.tag
        self._finished = True
        return tail

    @property
    def tag(self) -> bytes:
        if self._tag is None:
            raise RuntimeError("authentication tag is only available after finalize()")
        return self._tag

    async def transform(self, source: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        """Yield ciphertext for ``source``; finalizes when the source is exhausted."""
        self._claim()
        async for chunk in source:
            out = self.update(chunk)
            if out:
                yield out
        tail = self.finalize()
        if tail:
            yield tail


class DecryptingTransform(_Transform):
    """Decrypt one stream and verify ``expected_tag`` at its end."""

    def __init__(self, key: bytes, iv: bytes, expected_tag: bytes):
        super().__init__()
        _check_key_iv(key, iv)
        if len(expected_tag) != TAG_SIZE:
            raise ValueError(f"tag must be {TAG_SIZE} bytes")
        self._ctx = Cipher(algorithms.AES(key), modes.GCM(iv, expected_tag)).decryptor()
        self.bytes_processed = 0

    def update(self, chunk: bytes) -> bytes:
        self._require_open()
        self.bytes_processed += len(chunk)
        return self._ctx.update(chunk)

    def finalize(self) -> bytes:
        """Verify the tag; raises AuthenticationError if it does not match."""
        self._require_open()
        self._finished = True
        try:
            return self._ctx.finalize()
        except InvalidTag as e:
            raise AuthenticationError(TAMPER_MESSAGE) from e

    async def transform(self, source: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        self._claim()
        held = b""
        async for chunk in source:
            out = self.update(chunk)
            if not out:
                continue
            if held:
                yield held
            held = out
        tail = self.finalize()
        if held:
            yield held
        if tail:
            yield tail


def open_encrypt(key: bytes, iv: bytes) -> EncryptingTransform:
    return EncryptingTransform(key, iv)


def open_decrypt(key: bytes, iv: bytes, expected_tag: bytes) -> DecryptingTransform:
    return DecryptingTransform(key, iv, expected_tag)
