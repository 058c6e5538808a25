"""Security helpers: key handling, streaming AEAD and bundle framing for VaultZip.

This package provides:
- purpose-bound at-rest encryption of small values under the master secret
- per-file data key generation and wrapping (KeyCodec)
- streaming AES-256-GCM transforms over async byte streams
- Argon2id licence-key derivation and file-key sealing for the client
- the length-prefixed download bundle codec
"""

from .kdf import generate_salt, derive_key
from .encrypter import Encrypter
from .keycodec import KeyCodec, FILE_KEY_PURPOSE
from .stream import EncryptingTransform, DecryptingTransform, open_encrypt, open_decrypt
from .keywrap import KeyWrapper
from .bundle import (
    BUNDLE_SUFFIX,
    bundle_name,
    decode_header,
    decode_length_prefix,
    encode_header,
    encode_length_prefix,
    split_bundle,
    strip_bundle_suffix,
)

__all__ = [
    "generate_salt",
    "derive_key",
    "Encrypter",
    "KeyCodec",
    "FILE_KEY_PURPOSE",
    "EncryptingTransform",
    "DecryptingTransform",
    "open_encrypt",
    "open_decrypt",
    "KeyWrapper",
    "BUNDLE_SUFFIX",
    "bundle_name",
    "decode_header",
    "decode_length_prefix",
    "encode_header",
    "encode_length_prefix",
    "split_bundle",
    "strip_bundle_suffix",
]
