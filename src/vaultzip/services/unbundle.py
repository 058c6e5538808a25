"""Client-side reversal of a download bundle.

Stages run strictly in order and each fails with its own error; nothing is
retried:

    READ_BYTES          -> BundleReadError
    PARSE_LENGTH_PREFIX -> FormatError
    PARSE_HEADER        -> FormatError
    DERIVE_KEY          -> (never fails for a well-formed header)
    UNWRAP_FILE_KEY     -> AuthenticationError (wrong licence key or tampered header)
    DECRYPT_PAYLOAD     -> AuthenticationError (modified file or wrong licence key)
    WRITE_PLAINTEXT     -> BundleWriteError

The whole bundle is read into memory and the payload is decrypted in one
AES-GCM call, so no unauthenticated plaintext ever reaches the output file.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..core.exceptions import (
    AuthenticationError,
    BundleReadError,
    BundleWriteError,
    FormatError,
)
from ..security.bundle import PREFIX_SIZE, decode_header, decode_length_prefix, strip_bundle_suffix
from ..security.keywrap import KeyWrapper
from ..security.stream import TAMPER_MESSAGE

logger = logging.getLogger(__name__)


class UnbundleStage(Enum):
    READ_BYTES = "read bytes"
    PARSE_LENGTH_PREFIX = "parse length prefix"
    PARSE_HEADER = "parse header"
    DERIVE_KEY = "derive key"
    UNWRAP_FILE_KEY = "unwrap file key"
    DECRYPT_PAYLOAD = "decrypt payload"
    WRITE_PLAINTEXT = "write plaintext"
    DONE = "done"


class ClientUnbundler:
    """Parse a bundle, unwrap its file key with a licence key and decrypt the payload."""

    def __init__(self, key_wrapper: Optional[KeyWrapper] = None):
        self.key_wrapper = key_wrapper or KeyWrapper()
        self.stage: Optional[UnbundleStage] = None

    def decrypt_bytes(self, bundle: bytes, licence_key: str) -> bytes:
        """Return the plaintext of an in-memory bundle."""
        self.stage = UnbundleStage.PARSE_LENGTH_PREFIX
        header_length = decode_length_prefix(bundle)

        self.stage = UnbundleStage.PARSE_HEADER
        end = PREFIX_SIZE + header_length
        if len(bundle) < end:
            raise FormatError("Invalid vault file: truncated header.")
        metadata = decode_header(bytes(bundle[PREFIX_SIZE:end]))
        ciphertext = bytes(bundle[end:])

        self.stage = UnbundleStage.DERIVE_KEY
        derived = self.key_wrapper.derive_key(licence_key, metadata.key_salt)

        self.stage = UnbundleStage.UNWRAP_FILE_KEY
        file_key = self.key_wrapper.open(
            metadata.wrapped_key_for_client, derived, metadata.key_iv, metadata.key_auth_tag
        )

        self.stage = UnbundleStage.DECRYPT_PAYLOAD
        try:
            plaintext = AESGCM(file_key).decrypt(
                metadata.file_iv, ciphertext + metadata.file_auth_tag, None
            )
        except InvalidTag as e:
            raise AuthenticationError(TAMPER_MESSAGE) from e
        return plaintext

    def unbundle(
        self,
        bundle_path: Union[str, Path],
        licence_key: str,
        output_path: Optional[Union[str, Path]] = None,
    ) -> Path:
        """
        Decrypt ``bundle_path`` and write the plaintext next to it.

        The output path is the bundle path without its ``.vault`` suffix
        unless ``output_path`` is given. Returns the written path.
        """
        bundle_path = Path(bundle_path)
        target = Path(output_path) if output_path else strip_bundle_suffix(bundle_path)

        self.stage = UnbundleStage.READ_BYTES
        try:
            data = bundle_path.read_bytes()
        except OSError as e:
            raise BundleReadError(f'Unable to read "{bundle_path}": {e.strerror or e}') from e

        plaintext = self.decrypt_bytes(data, licence_key)

        self.stage = UnbundleStage.WRITE_PLAINTEXT
        tmp_path = target.with_name(target.name + ".part")
        try:
            tmp_path.write_bytes(plaintext)
            os.replace(tmp_path, target)
        except OSError as e:
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise BundleWriteError(f'Unable to write "{target}": {e.strerror or e}') from e

        self.stage = UnbundleStage.DONE
        logger.info("decrypted %s (%d bytes)", target.name, len(plaintext))
        return target
